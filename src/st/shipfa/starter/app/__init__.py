"""
Starter Application Layer

This package implements the web application layer for the starter service, handling HTTP requests
and responses using the aiohttp framework. It provides the inbound email webhook, the
authentication routes and internal health endpoints.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration and middleware setup
- config.py: Configuration management using Pydantic settings
- auth_config.py: Builds the AuthOptions used by the authentication routes
- metrics.py: Metrics client abstraction (Telegraf/StatsD, OpenTelemetry or no-op)
- handlers/: Request handlers for different endpoints
- tasks.py: Background tasks for health monitoring and verification token cleanup
- util/: Command line utilities

The application uses two middleware layers:
- Metrics middleware for request counts and timings
- Sentry middleware for error reporting

It provides the following main endpoints:
- Mailgun inbound webhook (/api/webhook/mailgun)
- Authentication endpoints (/api/auth/*, /auth/error, /auth/signout)
- Internal health endpoints (/internal/alive, /internal/ready)
"""
