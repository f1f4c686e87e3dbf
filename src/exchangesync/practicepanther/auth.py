"""
PracticePanther OAuth2 token lifecycle.

PP issues bearer tokens through the standard authorization-code flow:

    GET  /OAuth/Authorize?response_type=code&client_id=...&redirect_uri=...
    POST /OAuth/Token   grant_type=authorization_code | refresh_token

Access tokens live 24 hours (expires_in=86400); refresh tokens last
60 days or until used. Every grant is stored as a new row in
oauth_tokens (see models/oauth.py) so the table keeps a token history.

The database is the cross-process source of truth. The in-memory cache
below only saves a query per request; it is re-resolved from the
database whenever it is empty, expiring, or rejected by the API.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from sqlmodel import Session, select

from exchangesync.models.oauth import PROVIDER_PRACTICEPANTHER, OAuthToken
from exchangesync.practicepanther.errors import AuthRequired, RefreshFailed

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

EXPIRY_MARGIN = timedelta(minutes=5)
DEFAULT_EXPIRES_IN = 86400
DEFAULT_SCOPE = "read write"
USER_AGENT = "ExchangeSync/1.0"


# ── Main class ────────────────────────────────────────────────────────────────

class TokenManager:
    """
    Owns PP access tokens: persistence, expiry detection, refresh and the
    initial authorization-code exchange.

    Usage:
        tokens = TokenManager(engine, client_id=..., client_secret=...)
        url = tokens.authorization_url(state="xyz")   # send the user here
        await tokens.exchange_authorization_code(code)  # from the callback
        token = await tokens.get_valid_token()          # before every call
    """

    def __init__(
        self,
        engine,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = "https://app.practicepanther.com/OAuth/Token",
        authorize_url: str = "https://app.practicepanther.com/OAuth/Authorize",
        redirect_uri: Optional[str] = None,
        provider: str = PROVIDER_PRACTICEPANTHER,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self.provider = provider
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._authorize_url = authorize_url
        self._redirect_uri = redirect_uri
        self._now = now
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
        )

        # Process-local cache; never authoritative
        self._cached_token: Optional[str] = None
        self._cached_expiry: Optional[datetime] = None
        self._rejected_token: Optional[str] = None

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Token resolution ──────────────────────────────────────────────────────

    def _is_fresh(self, expires_at: Optional[datetime]) -> bool:
        return expires_at is not None and expires_at > self._now() + EXPIRY_MARGIN

    async def get_valid_token(self) -> str:
        """
        Return an access token that is good for at least five more minutes.

        Raises:
            AuthRequired: no stored token, or an expired one without a
                refresh token.
            RefreshFailed: the refresh exchange was rejected and no other
                process has stored a newer valid token meanwhile.
        """
        if self._cached_token and self._is_fresh(self._cached_expiry):
            return self._cached_token

        stored = self._load_stored_token()
        if stored is None:
            raise AuthRequired(
                "No PracticePanther token found. OAuth authorization required."
            )

        rejected = stored.access_token == self._rejected_token
        if self._is_fresh(stored.expires_at) and not rejected:
            self._mark_used(stored.id)
            self._cache(stored)
            return stored.access_token

        if not stored.refresh_token:
            raise AuthRequired(
                "PracticePanther token expired and no refresh token is stored. "
                "Re-authorization required."
            )

        logger.info("PP token expired or rejected; refreshing")
        try:
            token = await self.refresh(stored.refresh_token)
        except RefreshFailed:
            # Another process sharing the store may have refreshed first,
            # which would also explain why our refresh token was rejected.
            latest = self._load_stored_token()
            if (
                latest is not None
                and latest.id != stored.id
                and self._is_fresh(latest.expires_at)
            ):
                logger.info("Using token refreshed by another process")
                self._cache(latest)
                return latest.access_token
            raise
        return token.access_token

    def _cache(self, token: OAuthToken) -> None:
        self._cached_token = token.access_token
        self._cached_expiry = token.expires_at
        self._rejected_token = None

    def _mark_used(self, token_id: int) -> None:
        with Session(self.engine) as s:
            token = s.get(OAuthToken, token_id)
            if token is not None:
                token.last_used_at = self._now()
                s.add(token)
                s.commit()

    def invalidate(self) -> None:
        """Drop the cached token after the API rejected it (HTTP 401).

        The next get_valid_token() re-reads the store and refreshes unless
        the stored token differs from the rejected one.
        """
        if self._cached_token:
            self._rejected_token = self._cached_token
        self._cached_token = None
        self._cached_expiry = None

    def _load_stored_token(self) -> Optional[OAuthToken]:
        """Newest active token; else re-activate the newest refreshable one."""
        with Session(self.engine) as s:
            token = s.exec(
                select(OAuthToken)
                .where(OAuthToken.provider == self.provider)
                .where(OAuthToken.is_active == True)  # noqa: E712
                .order_by(OAuthToken.created_at.desc(), OAuthToken.id.desc())
            ).first()
            if token is not None:
                return token

            fallback = s.exec(
                select(OAuthToken)
                .where(OAuthToken.provider == self.provider)
                .where(OAuthToken.refresh_token != None)  # noqa: E711
                .order_by(OAuthToken.created_at.desc(), OAuthToken.id.desc())
            ).first()
            if fallback is None:
                return None
            fallback.is_active = True
            s.add(fallback)
            s.commit()
            s.refresh(fallback)
            logger.info("Re-activated most recent refreshable PP token %s", fallback.id)
            return fallback

    # ── Grants ────────────────────────────────────────────────────────────────

    async def refresh(self, refresh_token: str) -> OAuthToken:
        """
        Exchange a refresh token for a new token pair and store it.

        The provider may omit a new refresh token; the old one is kept then.

        Raises:
            RefreshFailed: provider error or no access_token in the response.
                Stored rows are left untouched.
        """
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        try:
            payload = await self._post_token_form(form)
        except (httpx.HTTPError, ValueError) as exc:
            raise RefreshFailed(f"PracticePanther token refresh failed: {exc}") from exc

        if not payload.get("access_token"):
            raise RefreshFailed("No access_token in PracticePanther refresh response")

        if not payload.get("refresh_token"):
            payload["refresh_token"] = refresh_token
        token = self._store_token(payload)
        logger.info("PP token refreshed; expires at %s", token.expires_at.isoformat())
        return token

    async def exchange_authorization_code(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthToken:
        """
        One-time authorization-code exchange from the OAuth callback.

        Raises:
            AuthRequired: the provider rejected the code.
        """
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        redirect = redirect_uri or self._redirect_uri
        if redirect:
            form["redirect_uri"] = redirect
        try:
            payload = await self._post_token_form(form)
        except (httpx.HTTPError, ValueError) as exc:
            raise AuthRequired(f"PracticePanther code exchange failed: {exc}") from exc

        if not payload.get("access_token"):
            raise AuthRequired("No access_token in PracticePanther authorization response")

        token = self._store_token(payload)
        logger.info("Initial PP OAuth token stored (id=%s)", token.id)
        return token

    async def _post_token_form(self, form: Dict[str, str]) -> Dict[str, Any]:
        response = await self._http.post(
            self._token_url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.is_error:
            logger.error(
                "PP token endpoint returned %s: %s",
                response.status_code, response.text[:500],
            )
        response.raise_for_status()
        return response.json()

    def _store_token(self, payload: Dict[str, Any]) -> OAuthToken:
        """Insert a new active row and deactivate the provider's older rows."""
        now = self._now()
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        token = OAuthToken(
            provider=self.provider,
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type") or "Bearer",
            expires_at=now + timedelta(seconds=expires_in),
            scope=payload.get("scope"),
            is_active=True,
            created_at=now,
        )
        with Session(self.engine) as s:
            active = s.exec(
                select(OAuthToken)
                .where(OAuthToken.provider == self.provider)
                .where(OAuthToken.is_active == True)  # noqa: E712
            ).all()
            for old in active:
                old.is_active = False
                s.add(old)
            s.add(token)
            s.commit()
            s.refresh(token)

        self._cache(token)
        return token

    # ── Setup / monitoring helpers ────────────────────────────────────────────

    def authorization_url(self, state: Optional[str] = None) -> str:
        """URL the operator opens to grant this app access to PP."""
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri or "",
            "scope": DEFAULT_SCOPE,
        }
        if state:
            params["state"] = state
        return f"{self._authorize_url}?{urlencode(params)}"

    def token_status(self) -> Dict[str, Any]:
        """Summarize the stored token for dashboards and health checks."""
        stored = self._load_stored_token()
        if stored is None:
            return {"status": "no_token", "message": "No token found"}

        seconds_left = (stored.expires_at - self._now()).total_seconds()
        minutes_left = int(seconds_left // 60)
        info = {
            "expires_at": stored.expires_at,
            "has_refresh_token": bool(stored.refresh_token),
            "last_used_at": stored.last_used_at,
        }
        if seconds_left <= 0:
            info.update(
                status="expired",
                message=f"Token expired {int(-seconds_left // 60)} minutes ago",
            )
        elif minutes_left < 60:
            info.update(
                status="expiring_soon",
                message=f"Token expires in {minutes_left} minutes",
            )
        else:
            info.update(
                status="valid",
                message=f"Token valid for {minutes_left // 60} hours",
            )
        return info
