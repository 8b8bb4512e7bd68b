import asyncio
from datetime import datetime, timezone
import logging
from typing import NoReturn
from aiohttp import web
import sentry_sdk

from st.shipfa.starter.app.config import (
    AuthOptionsAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
)

logger = logging.getLogger(__name__)

VERIFICATION_TOKEN_CLEANUP_INTERVAL = 60 * 60  # 1 hour


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def verification_token_cleanup_task(app: web.Application) -> None:
    """
    Delete expired magic-link verification tokens once an hour.

    Only started when a database adapter is configured. Failures are reported and
    counted against the health gauge, and the loop carries on.
    """

    adapter = app[AuthOptionsAppKey].adapter
    if adapter is None:
        logger.warning("No database adapter, verification token cleanup task not started")
        return

    logger.info("Starting verification token cleanup task")
    metrics_client = app[MetricsClientAppKey]

    while True:
        await asyncio.sleep(VERIFICATION_TOKEN_CLEANUP_INTERVAL)

        try:
            deleted = await adapter.delete_expired_verification_tokens(
                datetime.now(timezone.utc)
            )
            if deleted > 0:
                logger.info("Deleted %d expired verification tokens", deleted)
            metrics_client.increment(
                "starter.task.verification_token_cleanup.deleted", deleted
            )
        except Exception as e:
            logging.exception("verification_token_cleanup_task: Exception")
            sentry_sdk.capture_exception(e)
            await app[HealthGaugeAppKey].womp()
