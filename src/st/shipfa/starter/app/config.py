"""
Configuration Module for the Starter Service

This module defines the configuration system for the starter service, using Pydantic for
settings validation and dependency injection through AppKeys.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. Dependency injection pattern using aiohttp's app context
4. Optional integrations: no database means no adapter and no magic-link sign in

The Settings class serves as the central configuration point, loaded from environment variables
with defaults suitable for development environments. All application components access settings
and shared resources through typed AppKeys to maintain clean dependency injection.

Key configuration areas include:
- Runtime environment and networking
- Application identity (name, domain, brand color)
- Mailgun (API access, webhook signing, sender addresses, reply forwarding)
- Authentication (secret, base URL, Google OAuth credentials)
- Database connection for the authentication adapter
- Monitoring and observability
"""

import asyncio
from typing import Final, Literal, Optional
import logging
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from aiohttp import web
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    AsyncSession,
)
from aiohttp import ClientSession

from st.shipfa.starter.app.metrics import MetricsClient
from st.shipfa.starter.auth.options import AuthOptions
from st.shipfa.starter.mailgun.client import MailgunClient
from st.shipfa.starter.model.health import HealthGauge


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the starter service.

    This class uses Pydantic's BaseSettings to automatically load values from environment
    variables, with sensible defaults for development environments. It handles validation,
    type conversion, and provides centralized configuration management.

    Environment variables are automatically mapped to settings fields, with aliases
    provided for compatibility with the variable names used by the original web starter.
    For example, the auth secret can be set with either AUTH_SECRET or NEXTAUTH_SECRET.
    """

    # Environment and debugging settings
    environment: Literal["development", "production", "test"] = Field(
        "development",
        validation_alias=AliasChoices("environment", "node_env"),
    )
    """
    Runtime environment. Controls secure cookies, cookie domain and auth debug logging.
    Set with ENVIRONMENT or NODE_ENV environment variables.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and detailed HTTP client tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    max_request_size: int = 50 * 1024 * 1024  # 50 MiB
    """
    Largest request body the server accepts. Inbound emails are posted whole,
    attachments included, so this is well above aiohttp's 1 MiB default.
    """

    # Application identity
    app_name: str = "ShipFast"
    """Application name, used as the subject prefix of forwarded emails."""

    domain_name: str = "shipfa.st"
    """
    Public domain of the application, without scheme.
    Used for the session cookie domain in production and for the logo URL.
    """

    brand_color: str = "#570df8"
    """Main brand color used by the sign-in and error pages."""

    # Mailgun settings
    mailgun_api_key: Optional[str] = None
    """
    Mailgun API key used for sending email.
    Set with MAILGUN_API_KEY environment variable.
    """

    mailgun_webhook_signing_key: Optional[str] = None
    """
    Key used to verify inbound webhook signatures. Falls back to the API key when unset.
    Set with MAILGUN_WEBHOOK_SIGNING_KEY environment variable.
    """

    mailgun_subdomain: str = "mg"
    """Subdomain of domain_name that Mailgun sends from."""

    mailgun_domain: Optional[str] = None
    """
    Sending domain. Defaults to "{mailgun_subdomain}.{domain_name}".
    Set with MAILGUN_DOMAIN environment variable.
    """

    mailgun_api_base: str = "https://api.mailgun.net"
    """Mailgun API base URL. Use https://api.eu.mailgun.net for EU accounts."""

    mailgun_from_no_reply: str = "ShipFast <noreply@mg.shipfa.st>"
    """Sender of automated emails such as magic links."""

    mailgun_from_admin: str = "ShipFast <admin@mg.shipfa.st>"
    """Sender of emails written by a person, including forwarded replies."""

    mailgun_support_email: Optional[str] = None
    """Support address shown to customers."""

    mailgun_forward_replies_to: Optional[str] = None
    """
    When set, inbound emails received through the webhook are forwarded here.
    Set with MAILGUN_FORWARD_REPLIES_TO environment variable (empty string disables).
    """

    # Authentication settings
    auth_secret: str = Field(
        "development-secret-change-me",
        validation_alias=AliasChoices("auth_secret", "nextauth_secret"),
    )
    """
    Secret used to derive the session encryption key, hash verification tokens and sign CSRF tokens.
    Set with AUTH_SECRET or NEXTAUTH_SECRET environment variables.
    """

    auth_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("auth_url", "nextauth_url"),
    )
    """
    Public base URL of the application, used to build OAuth redirect URIs and magic links.
    Defaults to https://{domain_name} in production and http://localhost:{port} otherwise.
    """

    google_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("google_id", "google_client_id"),
    )
    """Google OAuth client id. Set with GOOGLE_ID environment variable."""

    google_secret: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("google_secret", "google_client_secret"),
    )
    """Google OAuth client secret. Set with GOOGLE_SECRET environment variable."""

    email_link_max_age: int = 3600  # 1 hour
    """
    Lifetime in seconds of magic links sent by the email provider.
    Default: 3600 (1 hour)
    """

    # Database connection
    database_url: Optional[PostgresDsn] = Field(
        None,
        validation_alias=AliasChoices("database_url", "pg_dsn"),
    )
    """
    PostgreSQL connection string for the authentication adapter.
    Optional: without it users are not persisted and magic-link sign in is disabled.
    Set with DATABASE_URL or PG_DSN environment variables.
    """

    # Monitoring and observability settings
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["telegraf", "otel", "none"] = "none"
    """
    Metrics backend selection.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "starter"
    """Prefix for all metrics from this service."""

    otel_endpoint: Optional[str] = None
    """OTLP gRPC endpoint used when metrics_backend is "otel"."""

    model_config = SettingsConfigDict(populate_by_name=True)

    @field_validator(
        "mailgun_forward_replies_to",
        "mailgun_webhook_signing_key",
        "mailgun_api_key",
        "google_id",
        "google_secret",
        "database_url",
        mode="before",
    )
    @classmethod
    def empty_string_as_none(cls, v):
        """
        Treat empty environment variables as unset.

        Deployments commonly export optional variables with an empty value to
        disable a feature (for example MAILGUN_FORWARD_REPLIES_TO=""). Those
        must behave like the variable is absent.
        """
        if isinstance(v, str) and len(v.strip()) == 0:
            return None
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def effective_webhook_signing_key(self) -> Optional[str]:
        return self.mailgun_webhook_signing_key or self.mailgun_api_key

    @property
    def effective_mailgun_domain(self) -> str:
        if self.mailgun_domain:
            return self.mailgun_domain
        return f"{self.mailgun_subdomain}.{self.domain_name}"

    @property
    def effective_auth_url(self) -> str:
        if self.auth_url:
            return self.auth_url.rstrip("/")
        if self.is_production:
            return f"https://{self.domain_name}"
        return f"http://localhost:{self.http_port}"


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine (absent without a database)"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory (absent without a database)"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

MailgunClientAppKey: Final = web.AppKey("mailgun_client", MailgunClient)
"""AppKey for accessing the Mailgun API client"""

AuthOptionsAppKey: Final = web.AppKey("auth_options", AuthOptions)
"""AppKey for accessing the authentication configuration"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for accessing the metrics client"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""

VerificationTokenCleanupTaskAppKey: Final = web.AppKey(
    "verification_token_cleanup_task", asyncio.Task[None]
)
"""AppKey for the background task that removes expired verification tokens"""
