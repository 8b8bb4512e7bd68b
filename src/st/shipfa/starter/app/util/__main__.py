import argparse
import asyncio
import base64
import json
import logging
import os
import secrets
import time
from typing import Optional
import aiohttp

from st.shipfa.starter.app.config import Settings
from st.shipfa.starter.mailgun.client import MailgunClient
from st.shipfa.starter.mailgun.signature import compute_signature

logger = logging.getLogger(__name__)


async def genSecret() -> None:
    print(base64.b64encode(os.urandom(32)).decode("utf-8"))


async def signWebhook(signing_key: str, timestamp: Optional[str] = None) -> None:
    """Print the signature fields of a webhook request, for use with curl."""
    if timestamp is None:
        timestamp = str(int(time.time()))
    token = secrets.token_hex(25)
    print(
        json.dumps(
            {
                "timestamp": timestamp,
                "token": token,
                "signature": compute_signature(signing_key, timestamp, token),
            },
            indent=2,
        )
    )


async def sendEmail(to: str, subject: str, html: str) -> None:
    settings = Settings()  # type: ignore
    async with aiohttp.ClientSession() as http_session:
        mailgun_client = MailgunClient(
            http_session,
            settings.mailgun_api_key,
            settings.effective_mailgun_domain,
            settings.mailgun_from_no_reply,
            api_base=settings.mailgun_api_base,
        )
        result = await mailgun_client.send_email(to=to, subject=subject, html=html)
        print(json.dumps(result, indent=2))


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="starterutil", description="Starter service utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-secret", help="Generate an AUTH_SECRET value")

    sign_webhook = subparsers.add_parser(
        "sign-webhook", help="Generate signed fields for a test webhook request"
    )
    sign_webhook.add_argument("signing_key", help="The webhook signing key.")
    sign_webhook.add_argument(
        "--timestamp", default=None, help="Timestamp to sign. Defaults to now."
    )

    send_email = subparsers.add_parser(
        "send-email", help="Send an email with the configured Mailgun account"
    )
    send_email.add_argument("to", help="The recipient address.")
    send_email.add_argument("subject", help="The subject line.")
    send_email.add_argument("html", help="The HTML body.")

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-secret":
        await genSecret()
    elif command == "sign-webhook":
        await signWebhook(args["signing_key"], args.get("timestamp"))
    elif command == "send-email":
        await sendEmail(args["to"], args["subject"], args["html"])


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
