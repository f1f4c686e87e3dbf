"""Tests for TokenManager: storage, expiry margin, refresh and code exchange."""
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlmodel import Session, select

from exchangesync.models.oauth import OAuthToken
from exchangesync.practicepanther.auth import TokenManager
from exchangesync.practicepanther.errors import AuthRequired, RefreshFailed

NOW = datetime(2025, 6, 1, 12, 0, 0)
TOKEN_URL = "https://pp.test/OAuth/Token"


class TokenEndpoint:
    """httpx.MockTransport handler standing in for PP's token endpoint."""

    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {
            "access_token": "access-new",
            "refresh_token": "refresh-new",
            "expires_in": 86400,
            "token_type": "bearer",
        }
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.forms.append(form)
        return httpx.Response(self.status_code, json=self.payload)


def make_manager(engine, endpoint, now=NOW):
    return TokenManager(
        engine,
        client_id="cid",
        client_secret="secret",
        token_url=TOKEN_URL,
        authorize_url="https://pp.test/OAuth/Authorize",
        redirect_uri="http://localhost:8000/oauth/callback",
        transport=httpx.MockTransport(endpoint),
        now=lambda: now,
    )


def add_token(engine, access="access-old", refresh="refresh-old",
              expires_in=timedelta(hours=12), is_active=True, created_at=None):
    with Session(engine) as s:
        token = OAuthToken(
            access_token=access,
            refresh_token=refresh,
            expires_at=NOW + expires_in,
            is_active=is_active,
            created_at=created_at or NOW - timedelta(hours=1),
        )
        s.add(token)
        s.commit()
        s.refresh(token)
        return token


def all_tokens(engine):
    with Session(engine) as s:
        return s.exec(select(OAuthToken).order_by(OAuthToken.id)).all()


# ─── get_valid_token ──────────────────────────────────────────────────────────

class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_no_token_requires_auth(self, engine):
        manager = make_manager(engine, TokenEndpoint())
        with pytest.raises(AuthRequired):
            await manager.get_valid_token()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_refresh(self, engine):
        endpoint = TokenEndpoint()
        add_token(engine)
        manager = make_manager(engine, endpoint)
        assert await manager.get_valid_token() == "access-old"
        assert endpoint.forms == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_six_minutes_left_is_still_valid(self, engine):
        endpoint = TokenEndpoint()
        add_token(engine, expires_in=timedelta(minutes=6))
        manager = make_manager(engine, endpoint)
        assert await manager.get_valid_token() == "access-old"
        assert endpoint.forms == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_four_minutes_left_triggers_refresh(self, engine):
        endpoint = TokenEndpoint()
        add_token(engine, expires_in=timedelta(minutes=4))
        manager = make_manager(engine, endpoint)

        assert await manager.get_valid_token() == "access-new"
        assert len(endpoint.forms) == 1
        assert endpoint.forms[0]["grant_type"] == "refresh_token"
        assert endpoint.forms[0]["refresh_token"] == "refresh-old"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_refresh_appends_row_and_deactivates_old(self, engine):
        add_token(engine, expires_in=timedelta(minutes=-10))
        manager = make_manager(engine, TokenEndpoint())
        await manager.get_valid_token()
        await manager.aclose()

        tokens = all_tokens(engine)
        assert len(tokens) == 2
        assert [t.is_active for t in tokens] == [False, True]
        assert tokens[1].expires_at == NOW + timedelta(seconds=86400)

    @pytest.mark.asyncio
    async def test_cached_token_reused(self, engine):
        endpoint = TokenEndpoint()
        add_token(engine, expires_in=timedelta(minutes=-1))
        manager = make_manager(engine, endpoint)
        await manager.get_valid_token()
        await manager.get_valid_token()
        assert len(endpoint.forms) == 1
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token_requires_auth(self, engine):
        add_token(engine, refresh=None, expires_in=timedelta(minutes=-1))
        manager = make_manager(engine, TokenEndpoint())
        with pytest.raises(AuthRequired):
            await manager.get_valid_token()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, engine):
        endpoint = TokenEndpoint()
        add_token(engine)
        manager = make_manager(engine, endpoint)
        assert await manager.get_valid_token() == "access-old"

        manager.invalidate()
        assert await manager.get_valid_token() == "access-new"
        assert len(endpoint.forms) == 1
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_inactive_refreshable_token_reactivated(self, engine):
        add_token(engine, is_active=False)
        manager = make_manager(engine, TokenEndpoint())
        assert await manager.get_valid_token() == "access-old"
        assert all_tokens(engine)[0].is_active is True
        await manager.aclose()


# ─── refresh ──────────────────────────────────────────────────────────────────

class TestRefresh:
    @pytest.mark.asyncio
    async def test_missing_refresh_token_in_response_keeps_old(self, engine):
        endpoint = TokenEndpoint(payload={"access_token": "access-new", "expires_in": 3600})
        add_token(engine, expires_in=timedelta(minutes=-1))
        manager = make_manager(engine, endpoint)
        await manager.get_valid_token()
        await manager.aclose()

        newest = all_tokens(engine)[-1]
        assert newest.refresh_token == "refresh-old"
        assert newest.expires_at == NOW + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_a_day(self, engine):
        endpoint = TokenEndpoint(payload={"access_token": "access-new"})
        manager = make_manager(engine, endpoint)
        token = await manager.refresh("refresh-old")
        assert token.expires_at == NOW + timedelta(days=1)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_provider_error_raises_refresh_failed(self, engine):
        endpoint = TokenEndpoint(status_code=400, payload={"error": "invalid_grant"})
        add_token(engine, expires_in=timedelta(minutes=-1))
        manager = make_manager(engine, endpoint)
        with pytest.raises(RefreshFailed):
            await manager.get_valid_token()
        await manager.aclose()

        tokens = all_tokens(engine)
        assert len(tokens) == 1
        assert tokens[0].is_active is True
        assert tokens[0].access_token == "access-old"

    @pytest.mark.asyncio
    async def test_token_refreshed_elsewhere_used_after_invalid_grant(self, engine):
        add_token(engine, expires_in=timedelta(minutes=-1))
        endpoint = TokenEndpoint(status_code=400, payload={"error": "invalid_grant"})

        def other_process_refreshes_first(request):
            # The other process stored its new token and spent our refresh token
            add_token(engine, access="access-other", refresh="refresh-other",
                      expires_in=timedelta(hours=24), created_at=NOW)
            return endpoint(request)

        manager = make_manager(engine, other_process_refreshes_first)
        assert await manager.get_valid_token() == "access-other"
        assert len(endpoint.forms) == 1
        # Cached: no second trip to the token endpoint
        assert await manager.get_valid_token() == "access-other"
        assert len(endpoint.forms) == 1
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_expired_token_elsewhere_does_not_mask_refresh_failure(self, engine):
        add_token(engine, expires_in=timedelta(minutes=-1))
        endpoint = TokenEndpoint(status_code=400, payload={"error": "invalid_grant"})

        def other_process_stores_stale_token(request):
            add_token(engine, access="access-stale", expires_in=timedelta(minutes=-1),
                      created_at=NOW)
            return endpoint(request)

        manager = make_manager(engine, other_process_stores_stale_token)
        with pytest.raises(RefreshFailed):
            await manager.get_valid_token()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_response_without_access_token_fails(self, engine):
        endpoint = TokenEndpoint(payload={"token_type": "bearer"})
        manager = make_manager(engine, endpoint)
        with pytest.raises(RefreshFailed):
            await manager.refresh("refresh-old")
        assert all_tokens(engine) == []
        await manager.aclose()


# ─── Authorization code / setup helpers ───────────────────────────────────────

class TestAuthorization:
    @pytest.mark.asyncio
    async def test_exchange_code_stores_token(self, engine):
        endpoint = TokenEndpoint()
        manager = make_manager(engine, endpoint)
        token = await manager.exchange_authorization_code("the-code")
        await manager.aclose()

        assert token.access_token == "access-new"
        form = endpoint.forms[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["redirect_uri"] == "http://localhost:8000/oauth/callback"
        assert len(all_tokens(engine)) == 1

    @pytest.mark.asyncio
    async def test_rejected_code_requires_auth(self, engine):
        endpoint = TokenEndpoint(status_code=400, payload={"error": "invalid_grant"})
        manager = make_manager(engine, endpoint)
        with pytest.raises(AuthRequired):
            await manager.exchange_authorization_code("bad")
        await manager.aclose()

    def test_authorization_url(self, engine):
        manager = make_manager(engine, TokenEndpoint())
        url = urlparse(manager.authorization_url(state="xyz"))
        query = parse_qs(url.query)
        assert url.path == "/OAuth/Authorize"
        assert query["client_id"] == ["cid"]
        assert query["response_type"] == ["code"]
        assert query["state"] == ["xyz"]


class TestTokenStatus:
    def test_no_token(self, engine):
        assert make_manager(engine, TokenEndpoint()).token_status()["status"] == "no_token"

    def test_valid(self, engine):
        add_token(engine, expires_in=timedelta(hours=5))
        status = make_manager(engine, TokenEndpoint()).token_status()
        assert status["status"] == "valid"
        assert status["has_refresh_token"] is True

    def test_expiring_soon(self, engine):
        add_token(engine, expires_in=timedelta(minutes=30))
        assert make_manager(engine, TokenEndpoint()).token_status()["status"] == "expiring_soon"

    def test_expired(self, engine):
        add_token(engine, expires_in=timedelta(minutes=-30))
        assert make_manager(engine, TokenEndpoint()).token_status()["status"] == "expired"


class TestUsageTracking:
    @pytest.mark.asyncio
    async def test_stored_token_use_stamped(self, engine):
        add_token(engine)
        manager = make_manager(engine, TokenEndpoint())
        await manager.get_valid_token()
        await manager.aclose()
        assert all_tokens(engine)[0].last_used_at == NOW
        assert manager.token_status()["last_used_at"] == NOW
