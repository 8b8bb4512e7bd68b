"""
Authentication Layer

Declarative authentication configuration and the pieces it wires together.

Key Components:
- options.py: AuthOptions and its session, JWT, cookie, theme and page options
- providers.py: Google OAuth provider and the email magic-link provider
- adapter.py: Optional SQLAlchemy adapter persisting users, accounts and verification tokens
- callbacks.py: Session and JWT callbacks, redirect policy, sign-in/sign-out events
- tokens.py: Encrypted session tokens, CSRF tokens, verification token hashing, PKCE

The HTTP routes consuming AuthOptions live in app/handlers/auth.py.
"""
