"""
Outbound transport interface and the aiosmtplib-backed SMTP implementation

The transport only reports acceptance. Delivery is confirmed later by
provider callbacks handled in services.event_recorder.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate

import aiosmtplib

from core.smtp_rfc_handler import SMTPResponseAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    """Outcome of a single transport submission"""
    accepted: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    permanent: bool = False
    code: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def ok(cls, provider_message_id: str, code: str = '250') -> 'SendResult':
        return cls(accepted=True, provider_message_id=provider_message_id, code=code)

    @classmethod
    def transient(cls, error: str, code: str = None, category: str = 'transient') -> 'SendResult':
        return cls(accepted=False, error=error, permanent=False, code=code, category=category)

    @classmethod
    def permanent_failure(cls, error: str, code: str = None, category: str = 'permanent') -> 'SendResult':
        return cls(accepted=False, error=error, permanent=True, code=code, category=category)


class Transport:
    """Interface every outbound provider adapter implements"""

    def send(self, to: str, subject: str, html: Optional[str], text: Optional[str],
             headers: Optional[Dict[str, str]] = None) -> SendResult:
        raise NotImplementedError

    def close(self) -> None:
        pass


class SMTPTransport(Transport):
    """
    SMTP submission via aiosmtplib

    4xx replies and connection problems are transient, 5xx replies are
    permanent. The generated Message-ID doubles as the provider message id.
    """

    def __init__(self, host: str, port: int, from_address: str, from_name: str = None,
                 username: str = None, password: str = None, timeout: int = 60,
                 validate_certs: bool = True, message_id_domain: str = 'localhost'):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.from_name = from_name
        self.username = username
        self.password = password
        self.timeout = timeout
        self.validate_certs = validate_certs
        self.message_id_domain = message_id_domain
        self.analyzer = SMTPResponseAnalyzer()

    @classmethod
    def from_config(cls, config: Any, from_address: str, from_name: str = None) -> 'SMTPTransport':
        return cls(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            from_address=from_address,
            from_name=from_name,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            timeout=config.SMTP_TIMEOUT,
            validate_certs=config.SMTP_VALIDATE_CERTS,
            message_id_domain=config.MESSAGE_ID_DOMAIN,
        )

    def build_message(self, to: str, subject: str, html: Optional[str], text: Optional[str],
                      headers: Optional[Dict[str, str]] = None) -> MIMEMultipart:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = formataddr((self.from_name, self.from_address)) if self.from_name else self.from_address
        msg['To'] = to
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = f"<{uuid.uuid4()}@{self.message_id_domain}>"

        for name, value in (headers or {}).items():
            if name in msg:
                del msg[name]
            msg[name] = value

        # Text part first so clients prefer the HTML alternative
        if text:
            msg.attach(MIMEText(text, 'plain', 'utf-8'))
        if html:
            msg.attach(MIMEText(html, 'html', 'utf-8'))
        return msg

    def send(self, to: str, subject: str, html: Optional[str], text: Optional[str],
             headers: Optional[Dict[str, str]] = None) -> SendResult:
        msg = self.build_message(to, subject, html, text, headers)
        return asyncio.run(self._send_async(msg))

    async def _send_async(self, msg: MIMEMultipart) -> SendResult:
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.timeout,
            use_tls=self.port == 465,  # Implicit TLS for port 465
            start_tls=True if self.port == 587 else None,
            validate_certs=self.validate_certs,
        )
        try:
            await smtp.connect()
            if self.username and self.password:
                await smtp.login(self.username, self.password)
            _, response = await smtp.send_message(msg)
            logger.debug(f"SMTP accepted {msg['Message-ID']} for {msg['To']}: {response}")
            return SendResult.ok(msg['Message-ID'])
        except aiosmtplib.SMTPRecipientsRefused as e:
            refused = e.recipients[0] if e.recipients else None
            if refused is None:
                return SendResult.permanent_failure(str(e), category='recipient_refused')
            return self._classify_reply(refused.code, refused.message)
        except aiosmtplib.SMTPResponseException as e:
            return self._classify_reply(e.code, e.message)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"SMTP connection problem sending to {msg['To']}: {e}")
            return SendResult.transient(str(e), category='connection')
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException as e:
                    logger.debug(f"SMTP QUIT failed: {e}")

    def _classify_reply(self, code: int, message: str) -> SendResult:
        analysis = self.analyzer.analyze(f"{code} {message}")
        error = f"{analysis.code} {analysis.message}".strip()
        if analysis.is_permanent:
            return SendResult.permanent_failure(error, code=analysis.code, category=analysis.subcategory)
        return SendResult.transient(error, code=analysis.code, category=analysis.subcategory)
