# collision/notifications.py
from __future__ import annotations

import logging
import smtplib
import time
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Callable, Optional

from collision import models
from collision.core.config import settings
from collision.database import db_session

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


class EmailNotConfigured(RuntimeError):
    pass


class SMTPTransport:
    """Thin smtplib adapter; one connection per message."""

    def __init__(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_alias: str = "",
        use_ssl: bool = True,
        timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_alias = from_alias
        self.use_ssl = use_ssl
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "SMTPTransport":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            from_alias=settings.SMTP_FROM_ALIAS,
            use_ssl=settings.SMTP_USE_SSL,
            timeout=settings.SMTP_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username)

    def send(self, to_email: str, subject: str, body: str) -> None:
        if not self.configured:
            raise EmailNotConfigured("SMTP_HOST / SMTP_USERNAME not set")

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_alias, self.username))
        msg["To"] = to_email

        if self.use_ssl:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as server:
                server.login(self.username, self.password or "")
                server.send_message(msg)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.username, self.password or "")
                server.send_message(msg)


class EmailGateway:
    """
    Delivers queued EmailLog rows with exponential backoff.

    Runs after the core transaction committed; a failed delivery only marks
    the log `failed` and never touches the match or the ledger.
    """

    def __init__(
        self,
        transport=None,
        *,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        session_scope=db_session,
    ):
        self.transport = transport or SMTPTransport.from_settings()
        self.max_retries = max(1, max_retries if max_retries is not None else settings.EMAIL_MAX_RETRIES)
        self.backoff_base = settings.EMAIL_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self._sleep = sleep
        self._session_scope = session_scope

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1))

    def dispatch(self, email_log_id: int) -> str:
        with self._session_scope() as db:
            log = db.get(models.EmailLog, email_log_id)
            if log is None:
                logger.warning("EmailLog %s not found", email_log_id)
                return STATUS_FAILED
            if log.status == STATUS_SENT:
                return STATUS_SENT

            for attempt in range(1, self.max_retries + 1):
                log.attempts = (log.attempts or 0) + 1
                try:
                    self.transport.send(log.to_email, log.subject, log.content or "")
                except EmailNotConfigured as exc:
                    log.status = STATUS_FAILED
                    log.error_msg = str(exc)
                    logger.warning("Email log=%s not sent: %s", email_log_id, exc)
                    break
                except (smtplib.SMTPException, OSError) as exc:
                    log.error_msg = repr(exc)
                    logger.warning(
                        "Email log=%s attempt %s/%s failed: %r", email_log_id, attempt, self.max_retries, exc,
                    )
                    if attempt < self.max_retries:
                        self._sleep(self.delay_for(attempt))
                    continue
                log.status = STATUS_SENT
                log.sent_at = datetime.now(timezone.utc)
                log.error_msg = None
                logger.info("Email log=%s sent to %s after %s attempt(s)", email_log_id, log.to_email, attempt)
                break
            else:
                log.status = STATUS_FAILED
                logger.error("Email log=%s failed after %s attempts", email_log_id, self.max_retries)

            db.add(log)
            return log.status


_gateway: Optional[EmailGateway] = None


def get_gateway() -> EmailGateway:
    global _gateway
    if _gateway is None:
        _gateway = EmailGateway()
    return _gateway


def set_gateway(gateway: Optional[EmailGateway]) -> None:
    global _gateway
    _gateway = gateway


def dispatch_in_background(email_log_id: int) -> None:
    """BackgroundTasks entry point; never raises into the response cycle."""
    try:
        get_gateway().dispatch(email_log_id)
    except Exception:
        logger.exception("Email dispatch crashed log=%s", email_log_id)
