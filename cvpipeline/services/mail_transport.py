"""
Mail transports for report delivery.

A transport exposes `async send(to, subject, html_body, text_body)` and raises
`DeliveryFailed` when the message was not accepted.
"""
import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Optional, Protocol

import httpx

from cvpipeline.config import Settings, get_settings
from cvpipeline.errors import DeliveryFailed
from cvpipeline.utils.logger import logger

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


class MailTransport(Protocol):
    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        ...


class SmtpTransport:
    """SMTP via the standard library, STARTTLS or implicit SSL"""

    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool = True,
        user: str = "",
        password: str = "",
        from_address: str = "",
        from_name: str = "",
        timeout: float = 15.0,
    ):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.user = user
        # App passwords are often copied with spaces every 4 chars
        self.password = password.replace(" ", "")
        self.sender = formataddr((from_name, from_address)) if from_name else from_address
        self.timeout = timeout

    def build_message(self, to: str, subject: str, html_body: str, text_body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        msg = self.build_message(to, subject, html_body, text_body)
        try:
            # smtplib is blocking
            await asyncio.to_thread(self._send_message, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailed(
                f"SMTP send failed: {e}", details={"host": self.host, "port": self.port}
            ) from e

    def _send_message(self, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.use_tls:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                self._login_if_needed(server)
                server.send_message(msg)
            return

        with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
            self._login_if_needed(server)
            server.send_message(msg)

    def _login_if_needed(self, server: smtplib.SMTP) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)


class SendGridTransport:
    """SendGrid v3 HTTP API"""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str = "",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout
        self._client = client

    def build_payload(self, to: str, subject: str, html_body: str, text_body: str) -> dict:
        sender = {"email": self.from_address}
        if self.from_name:
            sender["name"] = self.from_name
        return {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender,
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
        }

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        payload = self.build_payload(to, subject, html_body, text_body)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._client is not None:
                resp = await self._client.post(SENDGRID_API_URL, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(SENDGRID_API_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"SendGrid request failed: {e}") from e

        if resp.status_code >= 300:
            raise DeliveryFailed(
                f"SendGrid rejected message: HTTP {resp.status_code}",
                details={"status_code": resp.status_code, "body": resp.text[:500]},
            )


def get_transport(settings: Optional[Settings] = None) -> MailTransport:
    """Build the transport selected by EMAIL_PROVIDER"""
    settings = settings or get_settings()
    provider = settings.email_provider.lower()

    if provider == "sendgrid":
        if not settings.sendgrid_api_key:
            raise ValueError("SENDGRID_API_KEY is required when EMAIL_PROVIDER=sendgrid")
        transport = SendGridTransport(
            api_key=settings.sendgrid_api_key,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.email_send_timeout_seconds,
        )
    elif provider == "smtp":
        transport = SmtpTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            use_tls=settings.smtp_use_tls,
            user=settings.smtp_user,
            password=settings.smtp_password,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout=settings.email_send_timeout_seconds,
        )
    else:
        raise ValueError(f"Unsupported email provider: {settings.email_provider}")

    logger.info(f"Email transport initialized with provider: {provider}")
    return transport
