from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Set

import httpx

from tradegate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Template:
    subject: str
    body: str
    sms: Optional[str] = None


TEMPLATES: Dict[str, Template] = {
    "otp": Template(
        subject="Your Tradegate verification code",
        body=(
            "Hello {name},\n\nYour verification code is {otp}.\n"
            "It expires in {ttl_minutes} minutes. Do not share it with anyone."
        ),
        sms="Your Tradegate code is {otp}. It expires in {ttl_minutes} minutes.",
    ),
    "welcome": Template(
        subject="Welcome to Tradegate",
        body=(
            "Hello {name},\n\nYour account is verified and ready to use.\n"
            "Sign in at {base_url} to start sourcing."
        ),
    ),
    "password_reset": Template(
        subject="Reset your Tradegate password",
        body=(
            "Hello {name},\n\nWe received a request to reset your password. "
            "Visit the link below to choose a new one:\n\n{reset_url}\n\n"
            "This link expires in {ttl_minutes} minutes. If you didn't request it, "
            "you can safely ignore this email."
        ),
    ),
    "password_changed": Template(
        subject="Your Tradegate password was changed",
        body=(
            "Hello {name},\n\nThe password on your account was just changed and "
            "every other session was signed out.\nIf this wasn't you, contact support immediately."
        ),
    ),
    "admin_credentials": Template(
        subject="Your Tradegate admin account",
        body=(
            "Hello {name},\n\nAn administrator account was created for you.\n\n"
            "Admin ID: {admin_id}\nTemporary password: {temp_password}\n\n"
            "These credentials expire in {ttl_hours} hours. You will be asked to "
            "choose a new password when you first sign in at {base_url}/admin."
        ),
    ),
    "admin_password_reset": Template(
        subject="Your Tradegate admin credentials were reset",
        body=(
            "Hello {name},\n\nYour administrator credentials were reset.\n\n"
            "Admin ID: {admin_id}\nTemporary password: {temp_password}\n\n"
            "These credentials expire in {ttl_hours} hours and must be changed on first sign in."
        ),
    ),
    "supplier_application_submitted": Template(
        subject="We received your supplier application",
        body=(
            "Hello {name},\n\nThanks for applying to sell on Tradegate as "
            "{business_name}. Our team will review your application and get back to you."
        ),
    ),
    "supplier_approved": Template(
        subject="Your supplier account is approved",
        body=(
            "Hello {name},\n\nGood news: {business_name} is now a verified supplier. "
            "Switch to your supplier role to start listing products."
        ),
    ),
    "supplier_rejected": Template(
        subject="Update on your supplier application",
        body=(
            "Hello {name},\n\nWe could not approve your supplier application.\n\n"
            "Reason: {reason}\n\nYou can reapply after {cooldown_days} days once the "
            "issues above are addressed."
        ),
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class Recipient:
    email: Optional[str]
    phone: Optional[str] = None
    name: str = ""

    @classmethod
    def of(cls, identity: Any) -> "Recipient":
        return cls(
            email=getattr(identity, "email", None),
            phone=getattr(identity, "phone", None),
            name=getattr(identity, "full_name", "") or "",
        )


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery.

    Without SMTP settings nothing is sent and delivery reports failure, unless
    ``dev_mode`` is on, in which case the message is written to the log.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Tradegate",
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def is_available(self) -> bool:
        return self.is_configured or self.dev_mode

    def send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send a plain-text plus HTML message. Returns False on any delivery error."""
        if not self.is_configured:
            if not self.dev_mode:
                logger.warning("email_not_configured", to=_redact_email(to_email), subject=subject)
                return False
            logger.info(
                "email_dev_mode",
                to=_redact_email(to_email),
                subject=subject,
                body_preview=text_body[:500],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        html_body = "<br>".join(html.escape(line) for line in text_body.splitlines())
        msg.attach(MIMEText(f"<html><body><p>{html_body}</p></body></html>", "html"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=_redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=_redact_email(to_email), subject=subject)
        return True


class SmsService:
    """HTTP SMS gateway client; logs instead of sending in dev mode."""

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        token: Optional[str] = None,
        sender_id: str = "TRDGTE",
        timeout: float = 10.0,
        dev_mode: bool = False,
    ) -> None:
        self.gateway_url = gateway_url
        self.token = token
        self.sender_id = sender_id
        self.timeout = timeout
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    @property
    def is_available(self) -> bool:
        return self.is_configured or self.dev_mode

    async def send_sms(self, phone: str, message: str) -> bool:
        if not self.is_configured:
            if not self.dev_mode:
                logger.warning("sms_not_configured", to=f"***{phone[-3:]}")
                return False
            logger.info("sms_dev_mode", to=f"***{phone[-3:]}", message_preview=message)
            return True
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {"to": phone, "from": self.sender_id, "message": message}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.gateway_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("sms_gateway_rejected", status_code=exc.response.status_code)
            return False
        except httpx.HTTPError as exc:
            logger.error("sms_send_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        logger.info("sms_sent", to=f"***{phone[-3:]}")
        return True


class Notifier:
    """Best-effort template delivery over email and SMS.

    ``send`` awaits delivery and reports success; ``dispatch`` schedules it on
    the running loop and returns at once. Neither raises on delivery failure.
    Channels that are neither configured nor in dev mode are skipped, and a
    message with no usable channel counts as not delivered.
    """

    def __init__(
        self,
        email: EmailService,
        sms: Optional[SmsService] = None,
        *,
        base_url: str = "http://localhost:8000",
    ) -> None:
        self.email = email
        self.sms = sms or SmsService()
        self.base_url = base_url.rstrip("/")
        self._pending: Set[asyncio.Task] = set()

    def render(self, template_name: str, recipient: Recipient, data: Dict[str, Any]) -> tuple[Template, str, Optional[str]]:
        template = TEMPLATES.get(template_name)
        if template is None:
            raise ValueError(f"unknown notification template: {template_name}")
        values = _Defaults(base_url=self.base_url, name=recipient.name or "there")
        values.update({k: v for k, v in data.items() if v is not None})
        body = template.body.format_map(values)
        sms = template.sms.format_map(values) if template.sms else None
        return template, body, sms

    async def send(
        self,
        template_name: str,
        recipient: Recipient,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        template, body, sms_text = self.render(template_name, recipient, data or {})
        delivered = []
        try:
            if recipient.email and self.email.is_available:
                delivered.append(
                    await asyncio.to_thread(
                        self.email.send_email, recipient.email, template.subject, body
                    )
                )
            if sms_text and recipient.phone and self.sms.is_available:
                delivered.append(await self.sms.send_sms(recipient.phone, sms_text))
        except Exception as exc:
            logger.error(
                "notification_failed",
                template=template_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        ok = bool(delivered) and all(delivered)
        if not ok:
            logger.warning("notification_not_delivered", template=template_name)
        return ok

    def dispatch(
        self,
        template_name: str,
        recipient: Recipient,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Render eagerly so template mistakes surface in the caller
        self.render(template_name, recipient, data or {})
        task = asyncio.get_running_loop().create_task(
            self.send(template_name, recipient, data)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every dispatched notification; used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
