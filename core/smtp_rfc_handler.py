# SMTP reply classification for the dispatch pipeline (RFC 5321 / RFC 3463)

import re
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from enum import Enum

logger = logging.getLogger(__name__)


class ResponseCategory(Enum):
    """SMTP Response Categories based on RFC 5321"""
    SUCCESS = "success"
    TEMP_FAIL = "temp_fail"
    PERM_FAIL = "perm_fail"
    UNKNOWN = "unknown"


@dataclass
class SMTPResponseCode:
    code: str
    category: ResponseCategory
    description: str
    enhanced_status: Optional[str] = None


@dataclass
class ResponseAnalysis:
    """Classified transport reply consumed by the send queue"""
    code: str
    message: str
    enhanced_status: Optional[str]
    category: ResponseCategory
    subcategory: str

    @property
    def accepted(self) -> bool:
        return self.category == ResponseCategory.SUCCESS

    @property
    def is_permanent(self) -> bool:
        return self.category in (ResponseCategory.PERM_FAIL, ResponseCategory.UNKNOWN)


# Replies that appear at the end of a DATA transaction or on RCPT TO
SMTP_CODES: Dict[str, SMTPResponseCode] = {
    '250': SMTPResponseCode('250', ResponseCategory.SUCCESS, 'Requested mail action okay, completed', '2.0.0'),
    '251': SMTPResponseCode('251', ResponseCategory.SUCCESS, 'User not local; will forward', '2.1.5'),
    '252': SMTPResponseCode('252', ResponseCategory.SUCCESS, 'Cannot VRFY user, but will accept message', '2.5.2'),
    '421': SMTPResponseCode('421', ResponseCategory.TEMP_FAIL, 'Service not available, closing channel', '4.3.2'),
    '450': SMTPResponseCode('450', ResponseCategory.TEMP_FAIL, 'Mailbox temporarily unavailable', '4.2.0'),
    '451': SMTPResponseCode('451', ResponseCategory.TEMP_FAIL, 'Local error in processing', '4.3.0'),
    '452': SMTPResponseCode('452', ResponseCategory.TEMP_FAIL, 'Insufficient system storage', '4.3.1'),
    '454': SMTPResponseCode('454', ResponseCategory.TEMP_FAIL, 'TLS not available due to temporary reason', '4.7.0'),
    '550': SMTPResponseCode('550', ResponseCategory.PERM_FAIL, 'Mailbox unavailable', '5.1.1'),
    '551': SMTPResponseCode('551', ResponseCategory.PERM_FAIL, 'User not local', '5.1.6'),
    '552': SMTPResponseCode('552', ResponseCategory.PERM_FAIL, 'Exceeded storage allocation', '5.2.2'),
    '553': SMTPResponseCode('553', ResponseCategory.PERM_FAIL, 'Mailbox name not allowed', '5.1.3'),
    '554': SMTPResponseCode('554', ResponseCategory.PERM_FAIL, 'Transaction failed', '5.3.0'),
}

SUBCATEGORY_KEYWORDS = (
    ('throttled', ('rate limit', 'too many', 'throttl', 'try again later')),
    ('spam_policy', ('spam', 'blocked', 'blacklist', 'reputation')),
    ('mailbox_full', ('full', 'quota', 'storage')),
    ('invalid_recipient', ('not found', 'unknown', 'invalid', 'does not exist', 'no such user')),
    ('authentication', ('auth', 'login', 'credential', 'password')),
    ('policy_violation', ('policy', 'violation', 'prohibited', 'denied')),
)


class SMTPResponseAnalyzer:
    """Turns raw SMTP replies into transient/permanent classifications"""

    def __init__(self):
        self.enhanced_status_pattern = re.compile(r'\b([245])\.(\d{1,3})\.(\d{1,3})\b')

    def parse_response(self, smtp_response: str) -> Tuple[str, str, Optional[str]]:
        """
        Parse SMTP response line according to RFC 5321
        Returns: (response_code, message, enhanced_status_code)
        """
        if not smtp_response or len(smtp_response) < 3 or not smtp_response[:3].isdigit():
            return ('000', smtp_response or '', None)

        response_code = smtp_response[:3]
        message = smtp_response[4:].strip() if len(smtp_response) > 4 else ''

        enhanced_match = self.enhanced_status_pattern.search(message)
        enhanced_code = enhanced_match.group(0) if enhanced_match else None
        return (response_code, message, enhanced_code)

    def categorize_response(self, response_code: str,
                            enhanced_status: Optional[str] = None) -> ResponseCategory:
        code_info = SMTP_CODES.get(response_code)
        if code_info:
            return code_info.category

        # RFC 3463: the enhanced status class wins over an unknown basic code
        if enhanced_status:
            return {
                '2': ResponseCategory.SUCCESS,
                '4': ResponseCategory.TEMP_FAIL,
                '5': ResponseCategory.PERM_FAIL,
            }[enhanced_status[0]]

        if response_code.startswith(('2', '3')):
            return ResponseCategory.SUCCESS
        if response_code.startswith('4'):
            return ResponseCategory.TEMP_FAIL
        if response_code.startswith('5'):
            return ResponseCategory.PERM_FAIL
        return ResponseCategory.UNKNOWN

    def subcategorize(self, message: str) -> str:
        message_lower = (message or '').lower()
        for subcategory, keywords in SUBCATEGORY_KEYWORDS:
            if any(keyword in message_lower for keyword in keywords):
                return subcategory
        return 'unknown'

    def analyze(self, smtp_response: str) -> ResponseAnalysis:
        code, message, enhanced = self.parse_response(smtp_response)
        category = self.categorize_response(code, enhanced)
        analysis = ResponseAnalysis(
            code=code,
            message=message,
            enhanced_status=enhanced,
            category=category,
            subcategory=self.subcategorize(message) if category != ResponseCategory.SUCCESS else 'none',
        )
        logger.debug(f"SMTP reply {code} classified as {category.value}/{analysis.subcategory}")
        return analysis
