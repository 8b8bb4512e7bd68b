import asyncio
import contextlib
import logging
from time import time
from typing import (
    Optional,
)
import jinja2
from aiohttp import web
import aiohttp_jinja2
import aiohttp
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from st.shipfa.starter.app.auth_config import build_auth_options
from st.shipfa.starter.app.config import (
    AuthOptionsAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MailgunClientAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TickHealthTaskAppKey,
    VerificationTokenCleanupTaskAppKey,
)
from st.shipfa.starter.app.handlers.auth import (
    handle_auth_callback_email,
    handle_auth_callback_google,
    handle_auth_csrf,
    handle_auth_error_get,
    handle_auth_providers,
    handle_auth_session,
    handle_auth_signin_email,
    handle_auth_signin_google,
    handle_auth_signin_page,
    handle_auth_signout_get,
    handle_auth_signout_post,
    handle_auth_verify_request,
    handle_error_page,
    handle_signout_page,
)
from st.shipfa.starter.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from st.shipfa.starter.app.handlers.webhook import handle_mailgun_webhook
from st.shipfa.starter.app.metrics import create_metrics_client
from st.shipfa.starter.app.tasks import (
    tick_health_task,
    verification_token_cleanup_task,
)
from st.shipfa.starter.auth.adapter import SQLAlchemyAdapter
from st.shipfa.starter.mailgun.client import MailgunClient
from st.shipfa.starter.model.health import HealthGauge

logger = logging.getLogger(__name__)


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    adapter = None
    if settings.database_url is not None:
        engine = create_async_engine(str(settings.database_url))
        app[DatabaseAppKey] = engine
        database_session = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        app[DatabaseSessionMakerAppKey] = database_session
        adapter = SQLAlchemyAdapter(database_session)
    else:
        logger.warning("No database configured, users are not persisted")

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s", params)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s", params)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=[trace_config])

    metrics_client = await create_metrics_client(
        settings.metrics_backend,
        service_name=settings.statsd_prefix,
        host=settings.statsd_host,
        port=settings.statsd_port,
        otel_endpoint=settings.otel_endpoint,
        debug=settings.debug,
    )
    app[MetricsClientAppKey] = metrics_client

    mailgun_client = MailgunClient(
        app[SessionAppKey],
        settings.mailgun_api_key,
        settings.effective_mailgun_domain,
        settings.mailgun_from_no_reply,
        api_base=settings.mailgun_api_base,
        metrics_client=metrics_client,
    )
    app[MailgunClientAppKey] = mailgun_client

    auth_options = build_auth_options(settings, adapter, mailgun_client)
    app[AuthOptionsAppKey] = auth_options
    if auth_options.debug:
        logging.getLogger("st.shipfa.starter.auth").setLevel(logging.DEBUG)
        logging.getLogger("st.shipfa.starter.app.handlers.auth").setLevel(logging.DEBUG)

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))
    if adapter is not None:
        app[VerificationTokenCleanupTaskAppKey] = asyncio.create_task(
            verification_token_cleanup_task(app)
        )

    yield

    logger.info("Shutting down background tasks")

    tasks = [app[TickHealthTaskAppKey]]
    if VerificationTokenCleanupTaskAppKey in app:
        tasks.append(app[VerificationTokenCleanupTaskAppKey])

    for task in tasks:
        task.cancel()

    for task in tasks:
        with contextlib.suppress(asyncio.exceptions.CancelledError):
            await task

    if DatabaseAppKey in app:
        await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def metrics_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    # Route templates keep tag cardinality bounded.
    resource = request.match_info.route.resource
    request_path = resource.canonical if resource is not None else "unknown"

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "starter.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "starter.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "starter.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(
        middlewares=[metrics_middleware, sentry_middleware],
        client_max_size=settings.max_request_size,
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes([web.post("/api/webhook/mailgun", handle_mailgun_webhook)])

    app.add_routes(
        [
            web.get("/api/auth/csrf", handle_auth_csrf),
            web.get("/api/auth/providers", handle_auth_providers),
            web.get("/api/auth/session", handle_auth_session),
            web.get("/api/auth/signin", handle_auth_signin_page),
            web.post("/api/auth/signin/google", handle_auth_signin_google),
            web.post("/api/auth/signin/email", handle_auth_signin_email),
            web.get("/api/auth/callback/google", handle_auth_callback_google),
            web.get("/api/auth/callback/email", handle_auth_callback_email),
            web.get("/api/auth/verify-request", handle_auth_verify_request),
            web.get("/api/auth/signout", handle_auth_signout_get),
            web.post("/api/auth/signout", handle_auth_signout_post),
            web.get("/api/auth/error", handle_auth_error_get),
        ]
    )

    app.add_routes(
        [
            web.get("/auth/error", handle_error_page),
            web.get("/auth/signout", handle_signout_page),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    _ = aiohttp_jinja2.setup(
        app,
        enable_async=True,
        loader=jinja2.PackageLoader("st.shipfa.starter", "templates"),
        autoescape=jinja2.select_autoescape(["html"]),
    )

    app.cleanup_ctx.append(background_tasks)

    return app
