from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Optional

from starterauth.config import Settings
from starterauth.logging import get_logger, mask_email, mask_link

logger = get_logger(__name__)

_LAYOUT = """<!DOCTYPE html>
<html>
<body style="font-family: Helvetica, Arial, sans-serif; color: #1f2933; line-height: 1.5;">
  <div style="max-width: 560px; margin: 0 auto; padding: 32px 16px;">
    <h2>{heading}</h2>
    <p>{lead}</p>
    {link_block}
    <p style="color: #5b6470;">{footnote}</p>
    <hr style="border: none; border-top: 1px solid #e4e7eb;">
    <p style="font-size: 12px; color: #9aa5b1;">{sender}</p>
  </div>
</body>
</html>
"""


@dataclass(frozen=True)
class Notice:
    """Content of one outgoing message, rendered to HTML and plain text."""

    subject: str
    heading: str
    lead: str
    footnote: str
    link: Optional[str] = None
    link_label: str = ""

    def html(self, sender: str) -> str:
        link_block = ""
        if self.link:
            href = escape(self.link, quote=True)
            link_block = (
                f'<p><a href="{href}" style="background: #2563eb; color: #fff; padding: 10px 20px; '
                f'border-radius: 6px; text-decoration: none;">{escape(self.link_label)}</a></p>'
                f'<p style="font-size: 12px;">Or open this address: {href}</p>'
            )
        return _LAYOUT.format(
            heading=escape(self.heading),
            lead=escape(self.lead),
            link_block=link_block,
            footnote=escape(self.footnote),
            sender=escape(sender),
        )

    def text(self, sender: str) -> str:
        lines = [self.heading, "", self.lead, ""]
        if self.link:
            lines += [self.link, ""]
        lines += [self.footnote, "", f"-- {sender}"]
        return "\n".join(lines)


class EmailService:
    """Notification dispatcher for confirmation and password-reset mail.

    Delivery is blocking SMTP, so async callers run it in a worker thread.
    Every ``send_*`` method returns whether the relay accepted the message.
    Without an SMTP host the message is only logged and counts as sent.
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
        from_name: str = "Starter API",
        frontend_url: str = "http://localhost:5173",
        confirmation_ttl_hours: int = 24 * 7,
        reset_ttl_minutes: int = 60,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.confirmation_ttl_hours = confirmation_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
            confirmation_ttl_hours=settings.confirmation_token_ttl_hours,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, notice: Notice) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = notice.subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to_email
        message.set_content(notice.text(self.from_name))
        message.add_alternative(notice.html(self.from_name), subtype="html")
        return message

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
            server.starttls(context=context)
        else:
            # implicit TLS, usually port 465
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def deliver(self, to_email: str, notice: Notice) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=notice.subject,
                link=mask_link(notice.link) if notice.link else None,
            )
            return True

        message = self._compose(to_email, notice)
        try:
            with self._connect() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, smtp_code=e.smtp_code)
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=to_email)
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_delivery_failed",
                to=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=mask_email(to_email), subject=notice.subject)
        return True

    def send_confirmation_email(self, to_email: str, token: str) -> bool:
        days = max(1, self.confirmation_ttl_hours // 24)
        notice = Notice(
            subject="Confirm your email address",
            heading="Confirm your email",
            lead="Thanks for signing up. Confirm your email address to activate your account.",
            footnote=f"The link expires in {days} days. If you did not create an account, ignore this email.",
            link=f"{self.frontend_url}/confirm-email?token={token}",
            link_label="Confirm email",
        )
        return self.deliver(to_email, notice)

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        notice = Notice(
            subject="Reset your password",
            heading="Reset your password",
            lead="We received a request to reset your password. Use the link below to choose a new one.",
            footnote=(
                f"The link expires in {self.reset_ttl_minutes} minutes. "
                "If you did not ask for a reset, you can ignore this email."
            ),
            link=f"{self.frontend_url}/reset-password?token={token}",
            link_label="Reset password",
        )
        return self.deliver(to_email, notice)

    def send_test_email(self, to_email: str) -> bool:
        notice = Notice(
            subject="Test email",
            heading="Test email",
            lead="This message was sent from the development environment.",
            footnote="If you can read it, SMTP delivery is configured correctly.",
        )
        return self.deliver(to_email, notice)
