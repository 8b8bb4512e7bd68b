"""
Authentication configuration for the starter service.

build_auth_options turns Settings into the AuthOptions consumed by the
/api/auth routes: Google sign in, magic links when a database adapter is
available, a stateless JWT session, hardened cookies and logging events.
"""

from typing import List, Optional

from st.shipfa.starter.app.config import Settings
from st.shipfa.starter.auth.adapter import Adapter
from st.shipfa.starter.auth.callbacks import (
    jwt_callback,
    redirect_callback,
    session_callback,
    sign_in_event,
    sign_out_event,
)
from st.shipfa.starter.auth.options import (
    AuthOptions,
    Callbacks,
    CookieOptions,
    CookieSpec,
    CookiesOptions,
    Events,
    JWTOptions,
    Pages,
    Provider,
    SessionOptions,
    Theme,
)
from st.shipfa.starter.auth.providers import EmailProvider, GoogleProvider
from st.shipfa.starter.mailgun.client import MailgunClient

SESSION_MAX_AGE = 24 * 60 * 60  # 24 hours
SESSION_UPDATE_AGE = 12 * 60 * 60  # 12 hours
JWT_MAX_AGE = 60 * 60 * 24 * 30  # 30 days


def build_cookies(settings: Settings) -> CookiesOptions:
    secure = settings.is_production
    # Browsers drop __Secure- and __Host- cookies that are not marked Secure.
    secure_prefix = "__Secure-" if secure else ""
    host_prefix = "__Host-" if secure else ""

    def options(domain: Optional[str] = None) -> CookieOptions:
        return CookieOptions(
            http_only=True,
            same_site="lax",
            path="/",
            secure=secure,
            domain=domain,
        )

    return CookiesOptions(
        session_token=CookieSpec(
            name=f"{secure_prefix}starter.session-token",
            options=options(f".{settings.domain_name}" if secure else None),
        ),
        callback_url=CookieSpec(
            name=f"{secure_prefix}starter.callback-url",
            options=options(),
        ),
        # __Host- cookies must not set a domain.
        csrf_token=CookieSpec(
            name=f"{host_prefix}starter.csrf-token",
            options=options(),
        ),
        state=CookieSpec(
            name=f"{secure_prefix}starter.state",
            options=options(),
        ),
    )


def build_auth_options(
    settings: Settings,
    adapter: Optional[Adapter],
    mailgun_client: MailgunClient,
) -> AuthOptions:
    providers: List[Provider] = [
        GoogleProvider(
            client_id=settings.google_id,
            client_secret=settings.google_secret,
            authorization_params={
                "prompt": "consent",
                "access_type": "offline",
                "response_type": "code",
            },
        )
    ]

    # Magic links need somewhere to store verification tokens.
    if adapter is not None:
        providers.append(
            EmailProvider(
                mailgun_client=mailgun_client,
                sender=settings.mailgun_from_no_reply,
                max_age=settings.email_link_max_age,
            )
        )

    return AuthOptions(
        secret=settings.auth_secret,
        base_url=settings.effective_auth_url,
        providers=providers,
        adapter=adapter,
        session=SessionOptions(
            strategy="jwt",
            max_age=SESSION_MAX_AGE,
            update_age=SESSION_UPDATE_AGE,
        ),
        jwt=JWTOptions(max_age=JWT_MAX_AGE),
        cookies=build_cookies(settings),
        callbacks=Callbacks(
            session=session_callback,
            jwt=jwt_callback,
            redirect=redirect_callback,
        ),
        events=Events(sign_in=sign_in_event, sign_out=sign_out_event),
        theme=Theme(
            brand_color=settings.brand_color,
            logo=f"https://{settings.domain_name}/logoAndName.png",
        ),
        debug=settings.is_development,
        use_secure_cookies=settings.is_production,
        pages=Pages(error="/auth/error", sign_out="/auth/signout"),
    )
