# services/segments.py
"""
Segment evaluation

Static segments are explicit membership rows. Dynamic segments carry a JSON
filter predicate that is compiled into a SQLAlchemy clause and evaluated
against current subscriber data every time a campaign is resolved.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List

from sqlalchemy import and_, exists, not_, or_, select, true

from core.database_models import Segment, SegmentKind, SegmentMember, Subscriber, SubscriberTag
from core.errors import UnresolvableTargeting

logger = logging.getLogger(__name__)

FILTER_FIELDS = {
    'email': Subscriber.email,
    'first_name': Subscriber.first_name,
    'last_name': Subscriber.last_name,
    'engagement_score': Subscriber.engagement_score,
    'is_verified': Subscriber.is_verified,
    'created_at': Subscriber.created_at,
    'last_engagement_at': Subscriber.last_engagement_at,
}

DATETIME_FIELDS = ('created_at', 'last_engagement_at')

COMPARISON_OPERATORS = {
    'eq': lambda column, value: column == value,
    'ne': lambda column, value: column != value,
    'gt': lambda column, value: column > value,
    'gte': lambda column, value: column >= value,
    'lt': lambda column, value: column < value,
    'lte': lambda column, value: column <= value,
    'in': lambda column, value: column.in_(list(value)),
    'contains': lambda column, value: column.contains(value, autoescape=True),
    'endswith': lambda column, value: column.endswith(value, autoescape=True),
}


def _coerce_value(field: str, value: Any) -> Any:
    if field in DATETIME_FIELDS and isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace('Z', '+00:00')).replace(tzinfo=None)
        except ValueError:
            raise UnresolvableTargeting(f"Invalid timestamp for {field}: {value!r}")
    return value


def tag_clause(tags: Iterable[str]):
    """Subscribers carrying any of the given tags"""
    return exists().where(
        SubscriberTag.subscriber_id == Subscriber.id,
        SubscriberTag.tag.in_(list(tags)),
    )


def compile_filter(definition: Dict[str, Any]):
    """
    Compile a filter predicate into a SQLAlchemy boolean clause

    Raises:
        UnresolvableTargeting: unknown field, operator or malformed node
    """
    if not isinstance(definition, dict) or not definition:
        raise UnresolvableTargeting(f"Malformed segment filter: {definition!r}")

    if 'all' in definition:
        children = definition['all']
        if not isinstance(children, list):
            raise UnresolvableTargeting("'all' expects a list of conditions")
        return and_(true(), *[compile_filter(child) for child in children])

    if 'any' in definition:
        children = definition['any']
        if not isinstance(children, list) or not children:
            raise UnresolvableTargeting("'any' expects a non-empty list of conditions")
        return or_(*[compile_filter(child) for child in children])

    if 'not' in definition:
        return not_(compile_filter(definition['not']))

    field = definition.get('field')
    op = definition.get('op')
    value = definition.get('value')

    if field == 'tag':
        if op == 'has':
            return tag_clause([value])
        if op == 'in' and isinstance(value, list):
            return tag_clause(value)
        raise UnresolvableTargeting(f"Unsupported operator for tag: {op!r}")

    column = FILTER_FIELDS.get(field)
    if column is None:
        raise UnresolvableTargeting(f"Unknown filter field: {field!r}")

    operator = COMPARISON_OPERATORS.get(op)
    if operator is None:
        raise UnresolvableTargeting(f"Unknown filter operator: {op!r}")
    if op == 'in' and not isinstance(value, list):
        raise UnresolvableTargeting(f"'in' expects a list for {field}")

    if op == 'in':
        value = [_coerce_value(field, item) for item in value]
    else:
        value = _coerce_value(field, value)
    return operator(column, value)


class SegmentEvaluator:
    """Turns segments into subscriber id sets"""

    def load_segments(self, session, segment_ids: List[Any]) -> List[Segment]:
        if not segment_ids:
            return []
        segments = session.execute(
            select(Segment).where(Segment.id.in_(segment_ids))
        ).scalars().all()

        found = {segment.id for segment in segments}
        missing = [str(segment_id) for segment_id in segment_ids if segment_id not in found]
        if missing:
            logger.warning(f"Targeting references unknown segment(s): {missing}")
            raise UnresolvableTargeting(f"Unknown segment(s): {', '.join(missing)}")
        return segments

    def validate(self, segment: Segment) -> None:
        if segment.kind == SegmentKind.DYNAMIC.value:
            compile_filter(segment.filter_definition)
        elif segment.kind != SegmentKind.STATIC.value:
            raise UnresolvableTargeting(f"Segment {segment.id} has unknown kind {segment.kind!r}")

    def member_clause(self, segment: Segment):
        """Boolean clause over Subscriber selecting the segment's members"""
        if segment.kind == SegmentKind.DYNAMIC.value:
            return compile_filter(segment.filter_definition)
        return exists().where(
            SegmentMember.segment_id == segment.id,
            SegmentMember.subscriber_id == Subscriber.id,
        )
