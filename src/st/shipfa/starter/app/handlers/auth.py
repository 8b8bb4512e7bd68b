"""
Authentication Handlers

This module implements the web request handlers that consume AuthOptions. Every decision
(providers, persistence, cookie names and flags, token lifetimes, callbacks, events, pages)
comes from the options stored under AuthOptionsAppKey.

Sign in with Google:
1. GET /api/auth/signin renders the sign-in page with a CSRF token
2. POST /api/auth/signin/google checks the CSRF token, stores state and PKCE verifier in an
   encrypted state cookie, and redirects to Google
3. GET /api/auth/callback/google checks state, exchanges the code, maps the profile, resolves
   the user through the adapter (when configured), and sets the session cookie

Sign in with a magic link (only when a database adapter is configured):
1. POST /api/auth/signin/email stores a hashed verification token and emails the link
2. GET /api/auth/callback/email consumes the token and sets the session cookie

Other endpoints:
- GET /api/auth/session - Current session as JSON ({} when signed out)
- GET /api/auth/csrf - CSRF token for forms posted by client-side code
- GET /api/auth/providers - Enabled providers
- GET/POST /api/auth/signout - Sign out confirmation and sign out
- GET /api/auth/verify-request - "Check your email" page
- GET /api/auth/error - Error page (redirects to the configured page)
- GET /auth/error, GET /auth/signout - Custom pages configured in AuthOptions.pages
"""

from datetime import datetime, timedelta, timezone
import logging
import secrets
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse
import aiohttp
from aiohttp import web
import aiohttp_jinja2
import sentry_sdk

from st.shipfa.starter.app.config import (
    AuthOptionsAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from st.shipfa.starter.auth.options import AuthOptions, CookieSpec
from st.shipfa.starter.auth.providers import (
    OAuthAccountNotLinkedException,
    OAuthProviderException,
)
from st.shipfa.starter.auth.tokens import (
    create_csrf_token,
    csrf_token_from_cookie,
    decode_session_token,
    encode_session_token,
    generate_pkce_verifier,
    hash_verification_token,
    verify_csrf_token,
)
from st.shipfa.starter.mailgun.client import MailgunException

logger = logging.getLogger(__name__)

STATE_MAX_AGE = 15 * 60  # 15 minutes

# Claims managed by encode_session_token, dropped before re-encoding.
_MANAGED_CLAIMS = ("iat", "exp", "jti")

ERROR_MESSAGES = {
    "Configuration": "There is a problem with the server configuration.",
    "AccessDenied": "You do not have permission to sign in.",
    "Verification": "The sign in link is no longer valid. It may have been used already or it may have expired.",
    "OAuthCallback": "Unable to complete sign in with the selected provider.",
    "OAuthAccountNotLinked": "To confirm your identity, sign in with the same account you used originally.",
    "EmailSignin": "The sign in email could not be sent.",
    "CsrfTokenMismatch": "Your sign in form has expired. Please try again.",
    "SessionRequired": "Please sign in to access this page.",
    "Default": "Unable to sign in.",
}

ERROR_STATUSES = {"Configuration": 500, "AccessDenied": 403}


def _form_str(data, name: str) -> Optional[str]:
    value = data.get(name)
    if value is None or not isinstance(value, str):
        return None
    return value


def _set_cookie(
    response: web.StreamResponse, spec: CookieSpec, value: str, max_age: Optional[int]
) -> None:
    response.set_cookie(
        spec.name,
        value,
        max_age=max_age,
        path=spec.options.path,
        domain=spec.options.domain,
        secure=spec.options.secure,
        httponly=spec.options.http_only,
        samesite=spec.options.same_site.capitalize(),
    )


def _clear_cookie(response: web.StreamResponse, spec: CookieSpec) -> None:
    response.del_cookie(spec.name, path=spec.options.path, domain=spec.options.domain)


def _error_redirect(options: AuthOptions, code: str) -> web.HTTPFound:
    return web.HTTPFound(f"{options.url(options.pages.error)}?{urlencode({'error': code})}")


def _ensure_csrf(request: web.Request, options: AuthOptions) -> Tuple[str, Optional[str]]:
    """
    Return the CSRF token for this browser.

    The second element is the cookie value to set, or None when the existing
    cookie is still valid.
    """
    existing = csrf_token_from_cookie(
        options.secret, request.cookies.get(options.cookies.csrf_token.name)
    )
    if existing is not None:
        return existing, None
    return create_csrf_token(options.secret)


def _check_csrf(request: web.Request, options: AuthOptions, data) -> bool:
    return verify_csrf_token(
        options.secret,
        request.cookies.get(options.cookies.csrf_token.name),
        _form_str(data, "csrfToken"),
    )


def _provider_summary(options: AuthOptions, provider) -> Dict[str, str]:
    return {
        "id": provider.id,
        "name": provider.name,
        "type": provider.type,
        "signinUrl": options.url(f"/api/auth/signin/{provider.id}"),
        "callbackUrl": options.url(f"/api/auth/callback/{provider.id}"),
    }


def _page_context(request: web.Request, options: AuthOptions) -> Dict[str, Any]:
    settings = request.app[SettingsAppKey]
    return {
        "app_name": settings.app_name,
        "theme": options.theme,
        "base_url": options.base_url,
        "host": urlparse(options.base_url).netloc,
    }


def _session_from_token(options: AuthOptions, token: Dict[str, Any]) -> Dict[str, Any]:
    expires = datetime.now(timezone.utc) + timedelta(seconds=options.session.max_age)
    return {
        "user": {
            "name": token.get("name"),
            "email": token.get("email"),
            "image": token.get("picture"),
        },
        "expires": expires.isoformat().replace("+00:00", "Z"),
    }


async def _complete_sign_in(
    request: web.Request,
    options: AuthOptions,
    user: Dict[str, Any],
    account: Dict[str, Any],
    is_new_user: bool,
    callback_url: Optional[str],
) -> web.HTTPFound:
    token: Dict[str, Any] = {
        "name": user.get("name"),
        "email": user.get("email"),
        "picture": user.get("image"),
        "sub": user.get("id"),
    }
    token = await options.callbacks.jwt(
        token, user=user, account=account, is_new_user=is_new_user
    )
    serialized_token = encode_session_token(options.secret, token, options.jwt.max_age)

    destination = await options.callbacks.redirect(
        callback_url or options.base_url, options.base_url
    )
    response = web.HTTPFound(destination)
    _set_cookie(
        response, options.cookies.session_token, serialized_token, options.session.max_age
    )
    _clear_cookie(response, options.cookies.callback_url)

    if options.events.sign_in is not None:
        await options.events.sign_in(user=user, account=account, is_new_user=is_new_user)

    request.app[MetricsClientAppKey].increment(
        "starter.auth.sign_in",
        1,
        tag_dict={"provider": account.get("provider"), "new_user": is_new_user},
    )
    return response


async def handle_auth_csrf(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    token, cookie_value = _ensure_csrf(request, options)
    response = web.json_response({"csrfToken": token})
    if cookie_value is not None:
        _set_cookie(response, options.cookies.csrf_token, cookie_value, None)
    return response


async def handle_auth_providers(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    return web.json_response(
        {provider.id: _provider_summary(options, provider) for provider in options.providers}
    )


async def handle_auth_session(request: web.Request):
    """
    Return the current session.

    The session callback shapes the response; when it raises (for example for
    a blocked user) the session cookie is cleared and an empty session is
    returned. Tokens older than the session update age are re-issued so
    active users stay signed in.
    """
    options = request.app[AuthOptionsAppKey]
    cookie_spec = options.cookies.session_token
    serialized_token = request.cookies.get(cookie_spec.name)

    token = decode_session_token(options.secret, serialized_token)
    if token is None:
        response = web.json_response({})
        if serialized_token:
            _clear_cookie(response, cookie_spec)
        return response

    try:
        session = await options.callbacks.session(_session_from_token(options, token), token)
    except Exception as e:
        logger.warning("Session callback rejected session for %s: %s", token.get("sub"), e)
        sentry_sdk.capture_exception(e)
        response = web.json_response({})
        _clear_cookie(response, cookie_spec)
        return response

    response = web.json_response(session)

    issued_at = int(token.get("iat", 0))
    if int(time.time()) - issued_at >= options.session.update_age:
        claims = {k: v for k, v in token.items() if k not in _MANAGED_CLAIMS}
        refreshed_token = encode_session_token(options.secret, claims, options.jwt.max_age)
        _set_cookie(response, cookie_spec, refreshed_token, options.session.max_age)

    return response


async def handle_auth_signin_page(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    csrf_token, cookie_value = _ensure_csrf(request, options)

    error = request.query.get("error")
    context = _page_context(request, options)
    context.update(
        {
            "providers": options.providers,
            "csrf_token": csrf_token,
            "callback_url": request.query.get("callbackUrl", options.base_url),
            "error_message": ERROR_MESSAGES.get(error, ERROR_MESSAGES["Default"])
            if error
            else None,
        }
    )
    response = await aiohttp_jinja2.render_template_async(
        "signin.html", request, context=context
    )
    if cookie_value is not None:
        _set_cookie(response, options.cookies.csrf_token, cookie_value, None)
    return response


async def handle_auth_signin_google(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    data = await request.post()

    if not _check_csrf(request, options, data):
        raise _error_redirect(options, "CsrfTokenMismatch")

    provider = options.provider("google")
    if provider is None:
        raise _error_redirect(options, "Configuration")

    code_verifier, code_challenge = generate_pkce_verifier()
    state = secrets.token_urlsafe(32)
    redirect_uri = options.url(f"/api/auth/callback/{provider.id}")

    try:
        authorization_url = provider.authorization_url(redirect_uri, state, code_challenge)
    except OAuthProviderException:
        logger.exception("Google provider is not configured")
        raise _error_redirect(options, "Configuration")

    state_cookie = encode_session_token(
        options.secret,
        {"state": state, "code_verifier": code_verifier},
        STATE_MAX_AGE,
    )

    response = web.HTTPFound(authorization_url)
    _set_cookie(response, options.cookies.state, state_cookie, STATE_MAX_AGE)
    callback_url = _form_str(data, "callbackUrl")
    if callback_url:
        _set_cookie(response, options.cookies.callback_url, callback_url, None)
    raise response


async def _resolve_oauth_user(
    options: AuthOptions, profile: Dict[str, Any], account: Dict[str, Any]
) -> Tuple[Dict[str, Any], bool]:
    """
    Find or create the user behind an OAuth profile.

    Without an adapter the profile itself is the user. With one, an existing
    linked account wins; an unlinked account whose email already belongs to a
    user is refused; otherwise a new user is created and the account linked.
    """
    adapter = options.adapter
    if adapter is None:
        return dict(profile), False

    user = await adapter.get_user_by_account(
        account["provider"], account["provider_account_id"]
    )
    if user is not None:
        return dict(user), False

    email = profile.get("email")
    if email and await adapter.get_user_by_email(email) is not None:
        raise OAuthAccountNotLinkedException.email_in_use(account["provider"])

    created_user = await adapter.create_user(
        {
            "name": profile.get("name"),
            "email": email,
            "image": profile.get("image"),
            "created_at": profile.get("created_at"),
        }
    )
    await adapter.link_account({**account, "user_id": created_user["id"]})
    return dict(created_user), True


async def handle_auth_callback_google(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    http_session = request.app[SessionAppKey]

    provider = options.provider("google")
    if provider is None:
        raise _error_redirect(options, "Configuration")

    if request.query.get("error"):
        code = "AccessDenied" if request.query["error"] == "access_denied" else "OAuthCallback"
        raise _error_redirect(options, code)

    state_claims = decode_session_token(
        options.secret, request.cookies.get(options.cookies.state.name)
    )
    state: Optional[str] = request.query.get("state", None)
    code: Optional[str] = request.query.get("code", None)
    if (
        state_claims is None
        or state is None
        or code is None
        or not secrets.compare_digest(str(state_claims.get("state", "")), state)
    ):
        logger.warning("OAuth callback with missing or mismatched state")
        raise _error_redirect(options, "OAuthCallback")

    redirect_uri = options.url(f"/api/auth/callback/{provider.id}")
    try:
        tokens = await provider.exchange_code(
            http_session, code, redirect_uri, state_claims["code_verifier"]
        )
        profile = provider.profile(await provider.fetch_profile(http_session, tokens))
    except (OAuthProviderException, aiohttp.ClientError, KeyError) as e:
        logger.exception("OAuth callback failed")
        sentry_sdk.capture_exception(e)
        raise _error_redirect(options, "OAuthCallback")

    expires_in = tokens.get("expires_in")
    account = {
        "provider": provider.id,
        "type": provider.type,
        "provider_account_id": str(profile["id"]),
        "access_token": tokens.get("access_token"),
        "refresh_token": tokens.get("refresh_token"),
        "expires_at": int(time.time()) + int(expires_in) if expires_in else None,
        "token_type": tokens.get("token_type"),
        "scope": tokens.get("scope"),
        "id_token": tokens.get("id_token"),
    }

    try:
        user, is_new_user = await _resolve_oauth_user(options, profile, account)
    except OAuthAccountNotLinkedException:
        raise _error_redirect(options, "OAuthAccountNotLinked")

    response = await _complete_sign_in(
        request,
        options,
        user,
        account,
        is_new_user,
        request.cookies.get(options.cookies.callback_url.name),
    )
    _clear_cookie(response, options.cookies.state)
    raise response


async def handle_auth_signin_email(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    data = await request.post()

    if not _check_csrf(request, options, data):
        raise _error_redirect(options, "CsrfTokenMismatch")

    provider = options.provider("email")
    if provider is None or options.adapter is None:
        raise _error_redirect(options, "Configuration")

    email = (_form_str(data, "email") or "").strip().lower()
    if not email or "@" not in email:
        raise _error_redirect(options, "EmailSignin")

    token = secrets.token_hex(32)
    expires = datetime.now(timezone.utc) + timedelta(seconds=provider.max_age)
    await options.adapter.create_verification_token(
        {
            "identifier": email,
            "token": hash_verification_token(options.secret, token),
            "expires": expires,
        }
    )

    query = {"token": token, "email": email}
    callback_url = _form_str(data, "callbackUrl")
    if callback_url:
        query["callbackUrl"] = callback_url
    url = f"{options.url('/api/auth/callback/email')}?{urlencode(query)}"

    try:
        await provider.send_verification_request(
            email, url, urlparse(options.base_url).netloc, options.theme.brand_color
        )
    except (MailgunException, aiohttp.ClientError) as e:
        logger.exception("Unable to send verification email")
        sentry_sdk.capture_exception(e)
        raise _error_redirect(options, "EmailSignin")

    raise web.HTTPFound(options.url(options.pages.verify_request))


async def handle_auth_callback_email(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    adapter = options.adapter
    provider = options.provider("email")
    if provider is None or adapter is None:
        raise _error_redirect(options, "Configuration")

    token: Optional[str] = request.query.get("token", None)
    email: Optional[str] = request.query.get("email", None)
    if not token or not email:
        raise _error_redirect(options, "Verification")

    now = datetime.now(timezone.utc)
    verification_token = await adapter.use_verification_token(
        email, hash_verification_token(options.secret, token)
    )
    if verification_token is None or verification_token["expires"] < now:
        raise _error_redirect(options, "Verification")

    is_new_user = False
    user = await adapter.get_user_by_email(email)
    if user is None:
        user = await adapter.create_user({"email": email, "email_verified": now})
        is_new_user = True
    elif user.get("email_verified") is None:
        user = await adapter.update_user({"id": user["id"], "email_verified": now})

    account = {
        "provider": provider.id,
        "type": provider.type,
        "provider_account_id": email,
    }
    raise await _complete_sign_in(
        request,
        options,
        dict(user),
        account,
        is_new_user,
        request.query.get("callbackUrl"),
    )


async def handle_auth_verify_request(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    return await aiohttp_jinja2.render_template_async(
        "verify_request.html", request, context=_page_context(request, options)
    )


async def handle_auth_signout_get(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    if options.pages.sign_out != "/api/auth/signout":
        raise web.HTTPFound(options.url(options.pages.sign_out))
    return await handle_signout_page(request)


async def handle_auth_signout_post(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    data = await request.post()

    if not _check_csrf(request, options, data):
        raise _error_redirect(options, "CsrfTokenMismatch")

    token = decode_session_token(
        options.secret, request.cookies.get(options.cookies.session_token.name)
    )
    if token is not None and options.events.sign_out is not None:
        await options.events.sign_out(token)

    destination = await options.callbacks.redirect(
        _form_str(data, "callbackUrl") or options.base_url, options.base_url
    )
    response = web.HTTPFound(destination)
    _clear_cookie(response, options.cookies.session_token)
    raise response


async def handle_auth_error_get(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    if options.pages.error != "/api/auth/error":
        raise web.HTTPFound(
            f"{options.url(options.pages.error)}?{urlencode(request.query)}"
        )
    return await handle_error_page(request)


async def handle_error_page(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    error = request.query.get("error", "Default")
    context = _page_context(request, options)
    context["error_message"] = ERROR_MESSAGES.get(error, ERROR_MESSAGES["Default"])
    response = await aiohttp_jinja2.render_template_async(
        "auth_error.html", request, context=context
    )
    response.set_status(ERROR_STATUSES.get(error, 400))
    return response


async def handle_signout_page(request: web.Request):
    options = request.app[AuthOptionsAppKey]
    csrf_token, cookie_value = _ensure_csrf(request, options)
    context = _page_context(request, options)
    context.update(
        {
            "csrf_token": csrf_token,
            "callback_url": request.query.get("callbackUrl", options.base_url),
        }
    )
    response = await aiohttp_jinja2.render_template_async(
        "signout.html", request, context=context
    )
    if cookie_value is not None:
        _set_cookie(response, options.cookies.csrf_token, cookie_value, None)
    return response
