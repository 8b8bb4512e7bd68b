"""
Mailgun Messages API client.

Sends transactional email through ``POST /v3/{domain}/messages`` using the
shared aiohttp client session. Used for forwarding inbound replies to the
admin address and for delivering magic sign-in links.
"""

import logging
from typing import Any, Dict, Optional
from aiohttp import BasicAuth, ClientSession, FormData

logger = logging.getLogger(__name__)


class MailgunException(Exception):
    """
    Exception raised when an email cannot be handed to Mailgun.

    This exception class provides static methods for creating specific
    failure instances with appropriate error messages.
    """

    @staticmethod
    def not_configured() -> "MailgunException":
        """No API key is configured."""
        return MailgunException("error-mailgun-1000 Mailgun API key is not configured")

    @staticmethod
    def delivery_failed(status: int, body: str) -> "MailgunException":
        """Mailgun rejected the message."""
        return MailgunException(
            f"error-mailgun-1001 Mailgun rejected the message ({status}): {body}"
        )


class MailgunClient:
    def __init__(
        self,
        http_session: ClientSession,
        api_key: Optional[str],
        domain: str,
        default_sender: str,
        api_base: str = "https://api.mailgun.net",
        metrics_client: Optional[Any] = None,
    ) -> None:
        self.http_session = http_session
        self.api_key = api_key
        self.domain = domain
        self.default_sender = default_sender
        self.api_base = api_base.rstrip("/")
        self.metrics_client = metrics_client

    @property
    def messages_url(self) -> str:
        return f"{self.api_base}/v3/{self.domain}/messages"

    async def send_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
        reply_to: Optional[str] = None,
        sender: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send an email through the Mailgun Messages API.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body
            text: Optional plain text body
            reply_to: Optional Reply-To header value
            sender: From header, defaults to the client's default sender

        Returns:
            The JSON body returned by Mailgun (``id`` and ``message``)

        Raises:
            MailgunException: If no API key is configured or Mailgun answers with an error
        """
        if not self.api_key:
            raise MailgunException.not_configured()

        data = FormData()
        data.add_field("from", sender or self.default_sender)
        data.add_field("to", to)
        data.add_field("subject", subject)
        if text is not None:
            data.add_field("text", text)
        data.add_field("html", html)
        if reply_to:
            data.add_field("h:Reply-To", reply_to)

        async with self.http_session.post(
            self.messages_url,
            data=data,
            auth=BasicAuth("api", self.api_key),
        ) as resp:
            if self.metrics_client is not None:
                self.metrics_client.increment(
                    "starter.mailgun.send.count",
                    1,
                    tag_dict={"status": resp.status},
                )
            if resp.status != 200:
                raise MailgunException.delivery_failed(resp.status, await resp.text())
            body: Dict[str, Any] = await resp.json()

        logger.debug("Mailgun accepted message %s", body.get("id"))
        return body
