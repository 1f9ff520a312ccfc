from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Set

from gatekeeper.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Login OTP, unlock, verification, reset and account notices
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Gatekeeper",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        heading: str,
        lines: list[str],
        *,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
    ) -> tuple[str, str]:
        """Build matching HTML and plain-text bodies."""

        text_parts = [heading, ""] + lines
        html_parts = [f"<h2>{html.escape(heading)}</h2>"]
        html_parts.extend(f"<p>{html.escape(line)}</p>" for line in lines)
        if action_url:
            text_parts += ["", f"{action_label or 'Open'}: {action_url}"]
            html_parts.append(
                f'<p><a href="{html.escape(action_url, quote=True)}">{html.escape(action_label or action_url)}</a></p>'
            )
        text_parts += ["", f"- The {self.from_name} team"]
        html_body = (
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
            f"<body style=\"font-family: sans-serif; line-height: 1.6;\">{''.join(html_parts)}</body></html>"
        )
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Socket timeouts and refused connections
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_login_otp(self, to_email: str, otp: str, ttl_minutes: int = 10) -> bool:
        html_body, text_body = self._render(
            "Your login code",
            [
                f"Your one-time login code is {otp}.",
                f"It expires in {ttl_minutes} minutes. If you did not try to sign in, change your password.",
            ],
        )
        return self._send_email(to_email, f"{self.from_name} login code", html_body, text_body)

    def send_unlock_instructions(self, to_email: str, token: str, lock_minutes: int = 30) -> bool:
        unlock_url = f"{self.base_url}/unlock-account?token={token}"
        html_body, text_body = self._render(
            "Your account has been locked",
            [
                "We locked your account after several failed login attempts.",
                f"It stays locked for at least {lock_minutes} minutes. Use the link below to choose a new password and unlock it now.",
            ],
            action_url=unlock_url,
            action_label="Unlock account",
        )
        return self._send_email(to_email, "Account locked", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            ["Confirm your email address to finish setting up your account."],
            action_url=verify_url,
            action_label="Verify email",
        )
        return self._send_email(to_email, "Verify your email address", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. The link expires in one hour.",
                "If you did not request this, you can ignore this email.",
            ],
            action_url=reset_url,
            action_label="Reset password",
        )
        return self._send_email(to_email, f"Reset your {self.from_name} password", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            ["If you did not make this change, reset your password immediately."],
        )
        return self._send_email(to_email, "Password changed", html_body, text_body)

    def send_account_unlocked(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your account is unlocked",
            ["Your password was updated and your account is active again."],
        )
        return self._send_email(to_email, "Account unlocked", html_body, text_body)

    def send_welcome(self, to_email: str, name: Optional[str] = None) -> bool:
        html_body, text_body = self._render(
            f"Welcome{', ' + name if name else ''}!",
            ["Your email is verified and your account is ready."],
            action_url=self.base_url,
            action_label="Sign in",
        )
        return self._send_email(to_email, f"Welcome to {self.from_name}", html_body, text_body)

    def send_deregistration_confirmation(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your account has been closed",
            ["Your account was deregistered and your personal details were removed."],
        )
        return self._send_email(to_email, "Account closed", html_body, text_body)


class EmailDispatcher:
    """Runs blocking EmailService calls off the event loop.

    ``send`` awaits the outcome; ``dispatch`` fires and forgets, logging
    failures, so mail problems never roll back an authentication change.
    Outside an event loop ``dispatch`` delivers inline.
    """

    def __init__(self, service: EmailService) -> None:
        self.service = service
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def _deliver(sender: Callable[..., bool], *args) -> bool:
        try:
            return bool(sender(*args))
        except Exception as exc:
            logger.error("email_dispatch_failed", sender=getattr(sender, "__name__", "?"), error=str(exc))
            return False

    async def send(self, sender: Callable[..., bool], *args) -> bool:
        return await asyncio.to_thread(self._deliver, sender, *args)

    def dispatch(self, sender: Callable[..., bool], *args) -> Optional[asyncio.Task]:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._deliver(sender, *args)
            return None
        task = asyncio.create_task(self.send(sender, *args))
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.result() is False:
            logger.warning("email_delivery_failed")

    async def drain(self) -> None:
        """Wait for in-flight messages (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
