"""
Application-level audit trail written at the point of mutation
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from core.database_models import AuditLog

logger = logging.getLogger(__name__)


def record_audit_event(session, entity_type: str, entity_id, action: str,
                       details: Optional[Dict[str, Any]] = None) -> AuditLog:
    """
    Add an audit row to the caller's transaction

    The row commits or rolls back together with the mutation it describes.
    """
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        details=details or {},
        created_at=datetime.utcnow(),
    )
    session.add(entry)
    logger.info(f"Audit event: {entity_type} {entity_id} {action}")
    return entry
