"""
Inbound email webhook.

Mailgun posts every email received on the sending domain to
POST /api/webhook/mailgun as a form. The handler verifies the request
signature and, when a forwarding address is configured, relays the email to
it so replies from customers land in the admin's inbox.

Request fields used:
- timestamp, token, signature: Mailgun webhook signature
- From: Sender of the inbound email, used as Reply-To when forwarding
- Subject: Subject of the inbound email
- body-html: HTML body of the inbound email
"""

import logging
from typing import Optional
from aiohttp import web
import aiohttp_jinja2
import sentry_sdk

from st.shipfa.starter.app.config import (
    HealthGaugeAppKey,
    MailgunClientAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
)
from st.shipfa.starter.mailgun.signature import verify_webhook_signature

logger = logging.getLogger(__name__)


def _field(data, name: str) -> Optional[str]:
    value = data.get(name)
    if value is None or not isinstance(value, str):
        return None
    return value


async def handle_mailgun_webhook(request: web.Request) -> web.Response:
    settings = request.app[SettingsAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    try:
        data = await request.post()

        timestamp = _field(data, "timestamp")
        token = _field(data, "token")
        signature = _field(data, "signature")

        if not verify_webhook_signature(
            settings.effective_webhook_signing_key, timestamp, token, signature
        ):
            metrics_client.increment("starter.webhook.mailgun.invalid_signature", 1)
            return web.json_response({"error": "Invalid signature"}, status=401)

        sender = _field(data, "From")
        subject = _field(data, "Subject")
        html = _field(data, "body-html")

        # Forward to the admin only when there is somewhere to send it and something to send.
        if settings.mailgun_forward_replies_to and html and subject and sender:
            template = aiohttp_jinja2.get_env(request.app).get_template(
                "email_forward.html"
            )
            forwarded_html = await template.render_async(
                subject=subject, sender=sender, html=html
            )
            await request.app[MailgunClientAppKey].send_email(
                to=settings.mailgun_forward_replies_to,
                subject=f"{settings.app_name} | {subject}",
                html=forwarded_html,
                reply_to=sender,
                sender=settings.mailgun_from_admin,
            )
            metrics_client.increment("starter.webhook.mailgun.forwarded", 1)

        return web.json_response({})
    except web.HTTPException:
        # Request errors, such as a body over client_max_size, keep their status.
        raise
    except Exception as e:
        logger.exception("handle_mailgun_webhook: Exception")
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        return web.json_response({"error": str(e)}, status=500)
