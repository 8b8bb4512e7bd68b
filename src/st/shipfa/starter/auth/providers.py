"""
Sign-in providers.

GoogleProvider implements the OAuth 2.0 authorization code grant against
Google's endpoints (with PKCE and state). EmailProvider sends magic links
through the Mailgun client.

OAuth Flow with Google:
1. The browser posts to /api/auth/signin/google
2. The service redirects to Google's consent screen with state and PKCE challenge
3. Google redirects back to /api/auth/callback/google with an authorization code
4. The service exchanges the code for tokens and fetches the OpenID userinfo
5. The profile mapper turns the userinfo into the application's user shape
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode
from aiohttp import ClientSession, FormData
import jinja2

from st.shipfa.starter.mailgun.client import MailgunClient

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://openidconnect.googleapis.com/v1/userinfo"

_templates = jinja2.Environment(
    loader=jinja2.PackageLoader("st.shipfa.starter", "templates"),
    autoescape=jinja2.select_autoescape(["html"]),
)


class OAuthProviderException(Exception):
    """
    Exception raised for failures while talking to an OAuth provider.

    This exception class provides static methods for creating specific
    failure instances with appropriate error messages.
    """

    @staticmethod
    def not_configured(provider_id: str) -> "OAuthProviderException":
        """Client id or secret is missing."""
        return OAuthProviderException(
            f"error-oauth-provider-1000 Provider {provider_id} is not configured"
        )

    @staticmethod
    def token_exchange_failed(status: int) -> "OAuthProviderException":
        """The token endpoint rejected the authorization code."""
        return OAuthProviderException(
            f"error-oauth-provider-1001 Token exchange failed with status {status}"
        )

    @staticmethod
    def access_token_missing() -> "OAuthProviderException":
        """The token response did not include an access token."""
        return OAuthProviderException(
            "error-oauth-provider-1002 Token response missing access_token"
        )

    @staticmethod
    def userinfo_failed(status: int) -> "OAuthProviderException":
        """The userinfo endpoint did not return a profile."""
        return OAuthProviderException(
            f"error-oauth-provider-1003 Userinfo request failed with status {status}"
        )


class OAuthAccountNotLinkedException(Exception):
    """
    Raised when an OAuth sign in would attach a new provider account to an
    existing user. Accounts are only ever linked when the user is created.
    """

    @staticmethod
    def email_in_use(provider_id: str) -> "OAuthAccountNotLinkedException":
        """The profile email already belongs to a user without this provider linked."""
        return OAuthAccountNotLinkedException(
            f"error-oauth-account-1000 Email already in use by a user without a {provider_id} account"
        )


def google_profile(profile: Dict[str, Any]) -> Dict[str, Any]:
    """Map Google's OpenID userinfo to the application's user shape."""
    return {
        "id": profile["sub"],
        "name": profile.get("given_name") or profile.get("name"),
        "email": profile.get("email"),
        "image": profile.get("picture"),
        "created_at": datetime.now(timezone.utc),
    }


class GoogleProvider:
    id = "google"
    name = "Google"
    type = "oauth"
    scope = "openid email profile"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        profile: Callable[[Dict[str, Any]], Dict[str, Any]] = google_profile,
        authorization_params: Optional[Dict[str, str]] = None,
        authorization_endpoint: str = GOOGLE_AUTHORIZATION_ENDPOINT,
        token_endpoint: str = GOOGLE_TOKEN_ENDPOINT,
        userinfo_endpoint: str = GOOGLE_USERINFO_ENDPOINT,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.profile = profile
        self.authorization_params = dict(authorization_params or {})
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.userinfo_endpoint = userinfo_endpoint

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(
        self, redirect_uri: str, state: str, code_challenge: str
    ) -> str:
        """Build the consent screen URL including the configured authorization params."""
        if not self.is_configured:
            raise OAuthProviderException.not_configured(self.id)

        query = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        query.update(self.authorization_params)
        return f"{self.authorization_endpoint}?{urlencode(query)}"

    async def exchange_code(
        self,
        http_session: ClientSession,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> Dict[str, Any]:
        """
        Exchange an authorization code for tokens.

        Returns:
            The token endpoint response (``access_token``, ``expires_in``,
            ``refresh_token`` when offline access was granted, ``id_token``, ...)

        Raises:
            OAuthProviderException: If the exchange fails
        """
        if not self.is_configured:
            raise OAuthProviderException.not_configured(self.id)

        data = FormData(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code_verifier": code_verifier,
            }
        )
        async with http_session.post(self.token_endpoint, data=data) as resp:
            if resp.status != 200:
                logger.warning(
                    "Google token exchange failed: %s %s",
                    resp.status,
                    await resp.text(),
                )
                raise OAuthProviderException.token_exchange_failed(resp.status)
            tokens: Dict[str, Any] = await resp.json()

        if "access_token" not in tokens:
            raise OAuthProviderException.access_token_missing()
        return tokens

    async def fetch_profile(
        self, http_session: ClientSession, tokens: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Fetch the raw OpenID userinfo for the signed in user."""
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}
        async with http_session.get(self.userinfo_endpoint, headers=headers) as resp:
            if resp.status != 200:
                raise OAuthProviderException.userinfo_failed(resp.status)
            return await resp.json()


class EmailProvider:
    id = "email"
    name = "Email"
    type = "email"

    def __init__(
        self,
        mailgun_client: MailgunClient,
        sender: str,
        max_age: int = 24 * 60 * 60,
    ) -> None:
        self.mailgun_client = mailgun_client
        self.sender = sender
        self.max_age = max_age

    async def send_verification_request(
        self, identifier: str, url: str, host: str, brand_color: Optional[str] = None
    ) -> None:
        """Email a magic sign-in link to ``identifier``."""
        context = {"url": url, "host": host, "brand_color": brand_color or "#346df1"}
        html = _templates.get_template("email_magic_link.html").render(**context)
        text = _templates.get_template("email_magic_link.txt").render(**context)
        await self.mailgun_client.send_email(
            to=identifier,
            subject=f"Sign in to {host}",
            html=html,
            text=text,
            sender=self.sender,
        )
