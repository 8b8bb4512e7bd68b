"""
ShipFast Starter Service

This module implements the server side of the ShipFast starter: an inbound email webhook that
verifies Mailgun signatures and forwards customer replies to the admin, and the authentication
routes (Google sign in, email magic links, encrypted JWT sessions) driven by a declarative
AuthOptions configuration.

Key Components:
- app: Web application layer with request handlers, configuration and server setup
- auth: Authentication options, providers, callbacks, tokens and the database adapter
- mailgun: Mailgun Messages API client and webhook signature verification
- model: Database models for users, linked accounts and verification tokens

Architecture Overview:
1. Inbound email:
   - Mailgun posts received emails to /api/webhook/mailgun
   - The HMAC-SHA256 signature over timestamp and token is verified
   - When a forwarding address is configured, the email is sent on with Reply-To set to the sender

2. Authentication:
   - Settings are turned into AuthOptions once at startup
   - The /api/auth routes consult AuthOptions for every decision
   - Sessions are stateless encrypted tokens carried in a cookie
   - Users, accounts and magic-link tokens are persisted only when a database is configured
"""
