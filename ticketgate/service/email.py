from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

from ticketgate.logging import get_logger
from ticketgate.service.errors import DownstreamUnavailableError

logger = get_logger(__name__)


class EmailSender(Protocol):
    async def send(
        self,
        template: str,
        locals: Dict[str, Any],
        destination: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None: ...


# template name -> (subject, text body); bodies are str.format templates over locals
TEMPLATES: Dict[str, tuple[str, str]] = {
    "email-confirm-change": (
        "Confirm your new email address",
        "Hi {display_name},\n\n"
        "Use the link below to confirm your new email address:\n\n"
        "{link}\n\n"
        "If you did not ask for this change, ignore this message.",
    ),
    "signin-passwordless": (
        "Your sign-in link",
        "Hi {display_name},\n\n"
        "Use the link below to sign in:\n\n"
        "{link}\n\n"
        "The link can be used once.",
    ),
}


def verify_link(server_url: str, ticket: str, redirect_to: Optional[str]) -> str:
    params = {"ticket": ticket}
    if redirect_to:
        params["redirectTo"] = redirect_to
    return f"{server_url.rstrip('/')}/verify?{urlencode(params)}"


class EmailService:
    """Templated transactional email over SMTP.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "ticketgate",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def render(self, template: str, locals: Dict[str, Any]) -> tuple[str, str, str]:
        if template not in TEMPLATES:
            raise ValueError(f"unknown email template: {template}")
        subject, text_template = TEMPLATES[template]
        values = {
            "display_name": locals.get("display_name") or "there",
            "link": verify_link(
                locals.get("server_url", ""), locals["ticket"], locals.get("redirect_to")
            ),
        }
        text_body = text_template.format(**values)
        html_values = {k: html.escape(str(v)) for k, v in values.items()}
        html_body = "<p>" + text_template.format(**html_values).replace("\n\n", "</p><p>") + "</p>"
        return subject, text_body, html_body

    async def send(
        self,
        template: str,
        locals: Dict[str, Any],
        destination: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        subject, text_body, html_body = self.render(template, locals)
        sent = await asyncio.to_thread(
            self._send_email, destination, subject, html_body, text_body, headers or {}
        )
        if not sent:
            raise DownstreamUnavailableError(
                "email delivery failed", detail={"collaborator": "email"}
            )

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str, headers: Dict[str, str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        for name, value in headers.items():
            msg[name] = value
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        try:
            server.starttls(context=context)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        headers: Dict[str, str],
    ) -> bool:
        template = headers.get("x-email-template")
        if not self.is_configured:
            logger.info("email_dev_mode", to_email=to_email, template=template)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body, headers)
        try:
            with self._connect() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to_email=to_email,
                template=template,
                host=self.smtp_host,
                error_type=type(exc).__name__,
            )
            return False
        except OSError as exc:
            # ssl.SSLError and socket timeouts land here
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to_email=to_email, template=template)
        return True
