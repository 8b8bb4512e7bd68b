"""
Authentication callbacks and events.

Callbacks shape what ends up in the session token and in the session
returned to the browser. Events are fire-and-forget hooks used for security
logging.
"""

import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse

logger = logging.getLogger(__name__)


class UserBlockedException(Exception):
    """Raised by the session callback when the token is marked as blocked."""

    @staticmethod
    def blocked() -> "UserBlockedException":
        return UserBlockedException("error-auth-callback-1000 User is blocked")


def _now_ms() -> int:
    return int(time.time() * 1000)


async def session_callback(
    session: Dict[str, Any], token: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Add the user id and a security timestamp to the session.

    Raises:
        UserBlockedException: If the token carries ``blocked``
    """
    if session.get("user"):
        session["user"]["id"] = token.get("sub")

        session["timestamp"] = _now_ms()

        if token.get("blocked"):
            raise UserBlockedException.blocked()
    return session


async def jwt_callback(
    token: Dict[str, Any],
    user: Optional[Dict[str, Any]] = None,
    account: Optional[Dict[str, Any]] = None,
    is_new_user: bool = False,
) -> Dict[str, Any]:
    """
    Stamp the token at sign in.

    ``user`` and ``account`` are only passed when the token is first created;
    on later reads the token is returned unchanged.
    """
    if account and user:
        token["timestamp"] = _now_ms()
        token["authMethod"] = account.get("provider")
        # Minimal user data only, the token travels with every request.
        token["userId"] = user.get("id")
    return token


async def redirect_callback(url: str, base_url: str) -> str:
    """
    Restrict post sign-in redirects to this application.

    Relative paths are resolved against ``base_url``; absolute URLs are
    accepted only on the same origin.
    """
    if url.startswith("/") and not url.startswith("//"):
        return urljoin(base_url + "/", url.lstrip("/"))

    parsed_url = urlparse(url)
    parsed_base = urlparse(base_url)
    if (parsed_url.scheme, parsed_url.netloc) == (parsed_base.scheme, parsed_base.netloc):
        return url

    return base_url


async def sign_in_event(
    user: Dict[str, Any],
    account: Dict[str, Any],
    is_new_user: bool = False,
) -> None:
    logger.info(f"User {user.get('email')} signed in via {account.get('provider')}")
    if is_new_user:
        logger.info(f"New user created: {user.get('email')}")


async def sign_out_event(token: Dict[str, Any]) -> None:
    logger.info(f"User signed out: {token.get('email')}")
