"""
Declarative authentication configuration.

AuthOptions gathers everything the /api/auth routes need to know: which
providers are enabled, where users are persisted, how long sessions last,
how cookies are named and scoped, which callbacks shape tokens and sessions,
and which pages to render. The routes never read Settings directly.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from st.shipfa.starter.auth.adapter import Adapter
from st.shipfa.starter.auth.providers import EmailProvider, GoogleProvider

Provider = Union[GoogleProvider, EmailProvider]

SessionCallback = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Dict[str, Any]]]
JWTCallback = Callable[..., Awaitable[Dict[str, Any]]]
RedirectCallback = Callable[[str, str], Awaitable[str]]
SignInEvent = Callable[..., Awaitable[None]]
SignOutEvent = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class SessionOptions:
    strategy: str = "jwt"
    max_age: int = 30 * 24 * 60 * 60
    """Seconds until an idle session cookie expires."""
    update_age: int = 24 * 60 * 60
    """Seconds after which reading the session re-issues the cookie."""


@dataclass
class JWTOptions:
    max_age: int = 30 * 24 * 60 * 60
    """Seconds until the encrypted token itself expires."""


@dataclass
class CookieOptions:
    http_only: bool = True
    same_site: str = "lax"
    path: str = "/"
    secure: bool = False
    domain: Optional[str] = None


@dataclass
class CookieSpec:
    name: str
    options: CookieOptions = field(default_factory=CookieOptions)


@dataclass
class CookiesOptions:
    session_token: CookieSpec
    callback_url: CookieSpec
    csrf_token: CookieSpec
    state: CookieSpec


@dataclass
class Theme:
    brand_color: Optional[str] = None
    logo: Optional[str] = None


@dataclass
class Pages:
    sign_in: str = "/api/auth/signin"
    sign_out: str = "/api/auth/signout"
    error: str = "/api/auth/error"
    verify_request: str = "/api/auth/verify-request"


@dataclass
class Callbacks:
    session: SessionCallback
    jwt: JWTCallback
    redirect: RedirectCallback


@dataclass
class Events:
    sign_in: Optional[SignInEvent] = None
    sign_out: Optional[SignOutEvent] = None


@dataclass
class AuthOptions:
    secret: str
    base_url: str
    providers: List[Provider]
    callbacks: Callbacks
    cookies: CookiesOptions
    adapter: Optional[Adapter] = None
    session: SessionOptions = field(default_factory=SessionOptions)
    jwt: JWTOptions = field(default_factory=JWTOptions)
    events: Events = field(default_factory=Events)
    theme: Theme = field(default_factory=Theme)
    pages: Pages = field(default_factory=Pages)
    debug: bool = False
    use_secure_cookies: bool = False

    def provider(self, provider_id: str) -> Optional[Provider]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"
