"""
Tests for the authentication routes.

The application runs against fake Google and Mailgun servers. Cookies are
carried between requests explicitly with cookie_header so each request shows
exactly what the browser would send.
"""

import base64
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import re
import time
from urllib.parse import parse_qs, urlparse

from st.shipfa.starter.app.config import AuthOptionsAppKey
from st.shipfa.starter.auth.tokens import decode_session_token, encode_session_token
from tests.test_helpers import TEST_BASE_URL, TEST_SECRET, cookie_header, is_cleared

SESSION_COOKIE = "starter.session-token"
CSRF_COOKIE = "starter.csrf-token"
STATE_COOKIE = "starter.state"
CALLBACK_COOKIE = "starter.callback-url"


def local_path(location: str) -> str:
    assert location.startswith(TEST_BASE_URL), location
    return location[len(TEST_BASE_URL):]


async def get_csrf(client):
    resp = await client.get("/api/auth/csrf")
    assert resp.status == 200
    body = await resp.json()
    return body["csrfToken"], cookie_header(resp, CSRF_COOKIE)


async def start_google_sign_in(client, callback_url="/dashboard"):
    csrf_token, csrf_cookie = await get_csrf(client)
    resp = await client.post(
        "/api/auth/signin/google",
        data={"csrfToken": csrf_token, "callbackUrl": callback_url},
        headers={"Cookie": csrf_cookie},
        allow_redirects=False,
    )
    assert resp.status == 302
    return resp


async def google_sign_in(client):
    """Run the whole Google flow and return the callback response."""
    resp = await start_google_sign_in(client)
    query = parse_qs(urlparse(resp.headers["Location"]).query)

    return await client.get(
        "/api/auth/callback/google",
        params={"code": "auth-code", "state": query["state"][0]},
        headers={"Cookie": cookie_header(resp, STATE_COOKIE, CALLBACK_COOKIE)},
        allow_redirects=False,
    )


def session_cookie_for(claims, max_age=3600, now=None):
    raw = encode_session_token(TEST_SECRET, claims, max_age, now=now)
    return f"{SESSION_COOKIE}={raw}"


class TestCsrf:
    async def test_issues_token_and_cookie(self, client):
        resp = await client.get("/api/auth/csrf")
        body = await resp.json()

        assert len(body["csrfToken"]) == 64
        cookie = resp.cookies[CSRF_COOKIE]
        assert cookie.value.startswith(body["csrfToken"] + "|")
        assert cookie["httponly"]
        assert cookie["samesite"] == "Lax"
        assert cookie["path"] == "/"

    async def test_reuses_valid_cookie(self, client):
        csrf_token, csrf_cookie = await get_csrf(client)

        resp = await client.get("/api/auth/csrf", headers={"Cookie": csrf_cookie})
        body = await resp.json()

        assert body["csrfToken"] == csrf_token
        assert CSRF_COOKIE not in resp.cookies


class TestProviders:
    async def test_google_only_without_adapter(self, client):
        resp = await client.get("/api/auth/providers")
        body = await resp.json()

        assert list(body) == ["google"]
        assert body["google"] == {
            "id": "google",
            "name": "Google",
            "type": "oauth",
            "signinUrl": f"{TEST_BASE_URL}/api/auth/signin/google",
            "callbackUrl": f"{TEST_BASE_URL}/api/auth/callback/google",
        }

    async def test_email_with_adapter(self, email_client):
        resp = await email_client.get("/api/auth/providers")
        body = await resp.json()

        assert list(body) == ["google", "email"]
        assert body["email"]["type"] == "email"


class TestSession:
    async def test_signed_out(self, client):
        resp = await client.get("/api/auth/session")
        assert resp.status == 200
        assert await resp.json() == {}

    async def test_signed_in(self, client):
        resp = await client.get(
            "/api/auth/session",
            headers={
                "Cookie": session_cookie_for(
                    {
                        "sub": "01HZX",
                        "name": "Ada",
                        "email": "ada@example.com",
                        "picture": "https://example.com/ada.png",
                    }
                )
            },
        )
        body = await resp.json()

        assert body["user"] == {
            "id": "01HZX",
            "name": "Ada",
            "email": "ada@example.com",
            "image": "https://example.com/ada.png",
        }
        assert body["expires"].endswith("Z")
        assert isinstance(body["timestamp"], int)
        # Fresh tokens are not re-issued.
        assert SESSION_COOKIE not in resp.cookies

    async def test_invalid_cookie_is_cleared(self, client):
        resp = await client.get(
            "/api/auth/session", headers={"Cookie": f"{SESSION_COOKIE}=garbage"}
        )

        assert await resp.json() == {}
        assert is_cleared(resp, SESSION_COOKIE)

    async def test_expired_cookie_is_cleared(self, client):
        cookie = session_cookie_for({"sub": "x"}, max_age=60, now=int(time.time()) - 3600)
        resp = await client.get("/api/auth/session", headers={"Cookie": cookie})

        assert await resp.json() == {}
        assert is_cleared(resp, SESSION_COOKIE)

    async def test_blocked_user_is_signed_out(self, client):
        cookie = session_cookie_for({"sub": "x", "email": "x@example.com", "blocked": True})
        resp = await client.get("/api/auth/session", headers={"Cookie": cookie})

        assert resp.status == 200
        assert await resp.json() == {}
        assert is_cleared(resp, SESSION_COOKIE)

    async def test_old_token_is_reissued(self, client):
        update_age = client.server.app[AuthOptionsAppKey].session.update_age
        issued_at = int(time.time()) - update_age - 10
        cookie = session_cookie_for(
            {"sub": "01HZX", "email": "ada@example.com"}, max_age=86400 * 30, now=issued_at
        )

        resp = await client.get("/api/auth/session", headers={"Cookie": cookie})
        body = await resp.json()

        assert body["user"]["id"] == "01HZX"
        refreshed = decode_session_token(TEST_SECRET, resp.cookies[SESSION_COOKIE].value)
        assert refreshed["sub"] == "01HZX"
        assert refreshed["iat"] > issued_at
        assert resp.cookies[SESSION_COOKIE]["max-age"] == "86400"


class TestGoogleSignIn:
    async def test_redirects_to_google_with_state_and_pkce(self, client, fake_google):
        resp = await start_google_sign_in(client)

        location = urlparse(resp.headers["Location"])
        query = parse_qs(location.query)
        assert f"{location.scheme}://{location.netloc}" == fake_google.url
        assert location.path == "/authorize"
        assert query["client_id"] == ["google-client-id"]
        assert query["redirect_uri"] == [f"{TEST_BASE_URL}/api/auth/callback/google"]
        assert query["prompt"] == ["consent"]
        assert query["access_type"] == ["offline"]
        assert query["code_challenge_method"] == ["S256"]

        state_claims = decode_session_token(TEST_SECRET, resp.cookies[STATE_COOKIE].value)
        assert state_claims["state"] == query["state"][0]
        digest = hashlib.sha256(state_claims["code_verifier"].encode("ascii")).digest()
        challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        assert query["code_challenge"] == [challenge]

        assert resp.cookies[CALLBACK_COOKIE].value == "/dashboard"

    async def test_callback_signs_in(self, client, fake_google, caplog):
        with caplog.at_level(logging.INFO, logger="st.shipfa.starter.auth.callbacks"):
            resp = await google_sign_in(client)

        assert resp.status == 302
        assert resp.headers["Location"] == f"{TEST_BASE_URL}/dashboard"
        assert is_cleared(resp, STATE_COOKIE)
        assert is_cleared(resp, CALLBACK_COOKIE)
        assert "User ada@example.com signed in via google" in caplog.text

        token_request = fake_google.token_requests[0]
        assert token_request["grant_type"] == "authorization_code"
        assert token_request["code"] == "auth-code"
        assert token_request["client_secret"] == "google-client-secret"
        assert token_request["redirect_uri"] == f"{TEST_BASE_URL}/api/auth/callback/google"

        token = decode_session_token(TEST_SECRET, resp.cookies[SESSION_COOKIE].value)
        assert token["sub"] == "1234567890"
        assert token["email"] == "ada@example.com"
        assert token["authMethod"] == "google"
        assert token["userId"] == "1234567890"

        session = await client.get(
            "/api/auth/session", headers={"Cookie": cookie_header(resp, SESSION_COOKIE)}
        )
        body = await session.json()
        assert body["user"]["id"] == "1234567890"
        assert body["user"]["name"] == "Ada"
        assert body["user"]["image"] == "https://example.com/ada.png"

    async def test_csrf_mismatch(self, client):
        _, csrf_cookie = await get_csrf(client)
        resp = await client.post(
            "/api/auth/signin/google",
            data={"csrfToken": "wrong"},
            headers={"Cookie": csrf_cookie},
            allow_redirects=False,
        )

        assert resp.status == 302
        assert resp.headers["Location"] == f"{TEST_BASE_URL}/auth/error?error=CsrfTokenMismatch"

    async def test_missing_csrf_cookie(self, client):
        csrf_token, _ = await get_csrf(client)
        resp = await client.post(
            "/api/auth/signin/google",
            data={"csrfToken": csrf_token},
            allow_redirects=False,
        )

        assert resp.headers["Location"].endswith("error=CsrfTokenMismatch")

    async def test_state_mismatch(self, client, fake_google):
        resp = await start_google_sign_in(client)

        callback = await client.get(
            "/api/auth/callback/google",
            params={"code": "auth-code", "state": "forged"},
            headers={"Cookie": cookie_header(resp, STATE_COOKIE)},
            allow_redirects=False,
        )

        assert callback.headers["Location"].endswith("error=OAuthCallback")
        assert fake_google.token_requests == []

    async def test_missing_state_cookie(self, client, fake_google):
        callback = await client.get(
            "/api/auth/callback/google",
            params={"code": "auth-code", "state": "anything"},
            allow_redirects=False,
        )

        assert callback.headers["Location"].endswith("error=OAuthCallback")

    async def test_access_denied(self, client):
        callback = await client.get(
            "/api/auth/callback/google",
            params={"error": "access_denied"},
            allow_redirects=False,
        )

        assert callback.headers["Location"].endswith("error=AccessDenied")

    async def test_token_exchange_failure(self, client, fake_google):
        fake_google.token_status = 400

        resp = await google_sign_in(client)

        assert resp.status == 302
        assert resp.headers["Location"].endswith("error=OAuthCallback")
        assert SESSION_COOKIE not in resp.cookies

    async def test_offsite_callback_url_is_ignored(self, client):
        resp = await start_google_sign_in(client, callback_url="https://evil.example.com/")
        query = parse_qs(urlparse(resp.headers["Location"]).query)

        callback = await client.get(
            "/api/auth/callback/google",
            params={"code": "auth-code", "state": query["state"][0]},
            headers={"Cookie": cookie_header(resp, STATE_COOKIE, CALLBACK_COOKIE)},
            allow_redirects=False,
        )

        assert callback.headers["Location"] == TEST_BASE_URL

    async def test_adapter_creates_and_reuses_user(self, email_client):
        adapter = email_client.server.app[AuthOptionsAppKey].adapter

        first = await google_sign_in(email_client)
        assert first.status == 302
        assert len(adapter.users) == 1
        user = next(iter(adapter.users.values()))
        assert user["email"] == "ada@example.com"
        account = adapter.accounts[("google", "1234567890")]
        assert account["user_id"] == user["id"]
        assert account["refresh_token"] == "1//refresh-token"
        assert account["expires_at"] > int(time.time())

        second = await google_sign_in(email_client)
        assert second.status == 302
        assert len(adapter.users) == 1
        token = decode_session_token(TEST_SECRET, second.cookies[SESSION_COOKIE].value)
        assert token["sub"] == user["id"]

    async def test_adapter_refuses_unlinked_account(self, email_client):
        adapter = email_client.server.app[AuthOptionsAppKey].adapter
        await adapter.create_user({"email": "ada@example.com"})

        resp = await google_sign_in(email_client)

        assert resp.headers["Location"].endswith("error=OAuthAccountNotLinked")
        assert adapter.accounts == {}


async def request_magic_link(client, fake_mailgun, email="Ada@Example.com "):
    csrf_token, csrf_cookie = await get_csrf(client)
    resp = await client.post(
        "/api/auth/signin/email",
        data={"csrfToken": csrf_token, "email": email, "callbackUrl": "/dashboard"},
        headers={"Cookie": csrf_cookie},
        allow_redirects=False,
    )
    assert resp.status == 302
    if not fake_mailgun.messages:
        return resp, None
    text = fake_mailgun.field(len(fake_mailgun.messages) - 1, "text")
    match = re.search(r"http://localhost:5100(/api/auth/callback/email\?\S+)", text)
    return resp, match.group(1)


class TestEmailSignIn:
    async def test_sends_magic_link(self, email_client, fake_mailgun):
        resp, link = await request_magic_link(email_client, fake_mailgun)

        assert resp.headers["Location"] == f"{TEST_BASE_URL}/api/auth/verify-request"
        assert fake_mailgun.field(0, "to") == "ada@example.com"
        assert fake_mailgun.field(0, "subject") == "Sign in to localhost:5100"
        assert fake_mailgun.field(0, "from") == "Starter <noreply@mg.example.com>"
        assert link in fake_mailgun.field(0, "html").replace("&amp;", "&")

        adapter = email_client.server.app[AuthOptionsAppKey].adapter
        (identifier, stored_token), = adapter.verification_tokens.keys()
        raw_token = parse_qs(urlparse(link).query)["token"][0]
        assert identifier == "ada@example.com"
        assert stored_token != raw_token

    async def test_link_signs_in_once(self, email_client, fake_mailgun):
        _, link = await request_magic_link(email_client, fake_mailgun)

        resp = await email_client.get(link, allow_redirects=False)
        assert resp.status == 302
        assert resp.headers["Location"] == f"{TEST_BASE_URL}/dashboard"

        token = decode_session_token(TEST_SECRET, resp.cookies[SESSION_COOKIE].value)
        assert token["email"] == "ada@example.com"
        assert token["authMethod"] == "email"

        adapter = email_client.server.app[AuthOptionsAppKey].adapter
        user = await adapter.get_user_by_email("ada@example.com")
        assert user["email_verified"] is not None
        assert token["sub"] == user["id"]

        reused = await email_client.get(link, allow_redirects=False)
        assert reused.headers["Location"].endswith("error=Verification")

    async def test_existing_user_is_verified(self, email_client, fake_mailgun):
        adapter = email_client.server.app[AuthOptionsAppKey].adapter
        existing = await adapter.create_user({"email": "ada@example.com"})

        _, link = await request_magic_link(email_client, fake_mailgun)
        resp = await email_client.get(link, allow_redirects=False)

        token = decode_session_token(TEST_SECRET, resp.cookies[SESSION_COOKIE].value)
        assert token["sub"] == existing["id"]
        assert len(adapter.users) == 1
        assert adapter.users[existing["id"]]["email_verified"] is not None

    async def test_expired_link(self, email_client, fake_mailgun):
        _, link = await request_magic_link(email_client, fake_mailgun)

        adapter = email_client.server.app[AuthOptionsAppKey].adapter
        for record in adapter.verification_tokens.values():
            record["expires"] = datetime.now(timezone.utc) - timedelta(minutes=1)

        resp = await email_client.get(link, allow_redirects=False)
        assert resp.headers["Location"].endswith("error=Verification")
        assert SESSION_COOKIE not in resp.cookies

    async def test_forged_link(self, email_client):
        resp = await email_client.get(
            "/api/auth/callback/email",
            params={"token": "forged", "email": "ada@example.com"},
            allow_redirects=False,
        )
        assert resp.headers["Location"].endswith("error=Verification")

        missing = await email_client.get("/api/auth/callback/email", allow_redirects=False)
        assert missing.headers["Location"].endswith("error=Verification")

    async def test_invalid_email(self, email_client, fake_mailgun):
        resp, _ = await request_magic_link(email_client, fake_mailgun, email="not-an-email")

        assert resp.headers["Location"].endswith("error=EmailSignin")
        assert fake_mailgun.messages == []

    async def test_send_failure(self, email_client, fake_mailgun):
        fake_mailgun.status = 500

        csrf_token, csrf_cookie = await get_csrf(email_client)
        resp = await email_client.post(
            "/api/auth/signin/email",
            data={"csrfToken": csrf_token, "email": "ada@example.com"},
            headers={"Cookie": csrf_cookie},
            allow_redirects=False,
        )

        assert resp.headers["Location"].endswith("error=EmailSignin")

    async def test_disabled_without_adapter(self, client, fake_mailgun):
        resp, _ = await request_magic_link(client, fake_mailgun)

        assert resp.headers["Location"].endswith("error=Configuration")
        assert fake_mailgun.messages == []


class TestSignOut:
    async def test_get_redirects_to_sign_out_page(self, client):
        resp = await client.get("/api/auth/signout", allow_redirects=False)

        assert resp.status == 302
        assert resp.headers["Location"] == f"{TEST_BASE_URL}/auth/signout"

    async def test_sign_out_page(self, client):
        resp = await client.get("/auth/signout")
        html = await resp.text()

        assert resp.status == 200
        token = resp.cookies[CSRF_COOKIE].value.split("|")[0]
        assert f'value="{token}"' in html

    async def test_post_clears_session(self, client, caplog):
        csrf_token, csrf_cookie = await get_csrf(client)
        session_cookie = session_cookie_for({"sub": "x", "email": "ada@example.com"})

        with caplog.at_level(logging.INFO, logger="st.shipfa.starter.auth.callbacks"):
            resp = await client.post(
                "/api/auth/signout",
                data={"csrfToken": csrf_token},
                headers={"Cookie": f"{csrf_cookie}; {session_cookie}"},
                allow_redirects=False,
            )

        assert resp.status == 302
        assert resp.headers["Location"] == TEST_BASE_URL
        assert is_cleared(resp, SESSION_COOKIE)
        assert "User signed out: ada@example.com" in caplog.text

    async def test_post_requires_csrf(self, client):
        session_cookie = session_cookie_for({"sub": "x"})
        resp = await client.post(
            "/api/auth/signout",
            data={"csrfToken": "wrong"},
            headers={"Cookie": session_cookie},
            allow_redirects=False,
        )

        assert resp.headers["Location"].endswith("error=CsrfTokenMismatch")
        assert SESSION_COOKIE not in resp.cookies


class TestPages:
    async def test_sign_in_page(self, email_client):
        resp = await email_client.get("/api/auth/signin")
        html = await resp.text()

        assert resp.status == 200
        assert "Sign in with Google" in html
        assert "Sign in with Email" in html
        assert "https://shipfa.st/logoAndName.png" in html
        assert CSRF_COOKIE in resp.cookies

    async def test_error_route_redirects_to_error_page(self, client):
        resp = await client.get(
            "/api/auth/error", params={"error": "Verification"}, allow_redirects=False
        )

        assert resp.headers["Location"] == f"{TEST_BASE_URL}/auth/error?error=Verification"

    async def test_error_page(self, client):
        resp = await client.get("/auth/error", params={"error": "Verification"})
        html = await resp.text()

        assert resp.status == 400
        assert "The sign in link is no longer valid" in html

    async def test_error_page_access_denied(self, client):
        resp = await client.get("/auth/error", params={"error": "AccessDenied"})
        assert resp.status == 403

    async def test_error_page_unknown_code(self, client):
        resp = await client.get("/auth/error", params={"error": "<script>"})
        html = await resp.text()

        assert "Unable to sign in." in html
        assert "<script>" not in html

    async def test_verify_request_page(self, client):
        resp = await client.get("/api/auth/verify-request")
        html = await resp.text()

        assert resp.status == 200
        assert "Check your email" in html
        assert "localhost:5100" in html
