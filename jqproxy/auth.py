"""J-Quants credential lifecycle.

J-Quants uses two tokens: a long-lived refresh token (issued from the account
e-mail/password, valid about a week) and a short-lived idToken obtained by
POSTing the refresh token to ``/v1/token/auth_refresh``. Only the idToken is
attached to data requests.

:class:`TokenManager` owns both, refreshes the idToken before it expires,
falls back to the account credentials when the refresh token is missing or
rejected, and makes concurrent callers share a single in-flight refresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

import httpx

from jqproxy.config import ProxySettings

logger = logging.getLogger(__name__)

AUTH_REFRESH_PATH = "/v1/token/auth_refresh"
AUTH_USER_PATH = "/v1/token/auth_user"

T = TypeVar("T")


class AuthError(RuntimeError):
    """Credential exchange failure.

    ``status`` is the HTTP status of the auth endpoint, or None when the
    request never got an answer.
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def rejected(self) -> bool:
        """True when the upstream refused the credentials themselves."""
        return self.status is not None and 400 <= self.status < 500 and self.status != 429


def build_auth_headers(id_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {id_token}"}


def _response_detail(res: httpx.Response) -> Any:
    try:
        return res.json()
    except ValueError:
        return res.text


@dataclass
class CredentialState:
    """Process-wide credential state. Expiry times are epoch seconds; a refresh
    token expiry of 0 means unknown (assume valid until rejected)."""

    refresh_token: str | None = None
    refresh_expires_at: float = 0.0
    id_token: str | None = None
    id_expires_at: float = 0.0


class TokenManager:
    """Hands out valid idTokens, refreshing them as needed.

    Examples:
        >>> tokens = TokenManager(settings, http)
        >>> id_token = await tokens.ensure_id_token()
    """

    def __init__(
        self,
        settings: ProxySettings,
        http: httpx.AsyncClient,
        *,
        clock: Callable[[], float] = time.time,
        state: CredentialState | None = None,
    ) -> None:
        self.settings = settings
        self._http = http
        self._clock = clock
        self.state = state or CredentialState(refresh_token=settings.refresh_token)
        self._configured_token_rejected = False
        self._id_task: asyncio.Future[CredentialState] | None = None
        self._refresh_task: asyncio.Future[str] | None = None

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------
    def id_token_valid(self) -> bool:
        """True while the idToken is more than the safety margin away from expiry."""
        state = self.state
        if not state.id_token:
            return False
        return state.id_expires_at - self._clock() > self.settings.id_token_margin

    def ms_until_expiry(self) -> int:
        """Milliseconds the cached idToken remains usable (0 if none)."""
        if not self.state.id_token:
            return 0
        usable_until = self.state.id_expires_at - self.settings.id_token_margin
        return max(0, int((usable_until - self._clock()) * 1000))

    def _current_refresh_token(self) -> str | None:
        state = self.state
        if state.refresh_token and (
            state.refresh_expires_at == 0
            or state.refresh_expires_at - self._clock() > self.settings.refresh_token_margin
        ):
            return state.refresh_token
        if self.settings.refresh_token and not self._configured_token_rejected:
            state.refresh_token = self.settings.refresh_token
            state.refresh_expires_at = 0.0
            return state.refresh_token
        return None

    def _discard_refresh_token(self, token: str) -> None:
        if token == self.settings.refresh_token:
            self._configured_token_rejected = True
        if self.state.refresh_token == token:
            self.state.refresh_token = None
            self.state.refresh_expires_at = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def ensure_id_token(self) -> str:
        """Return a valid idToken, refreshing it if needed.

        Raises:
            AuthError: If neither the refresh token nor the account credentials
                yield an idToken.
        """
        if self.id_token_valid():
            return self.state.id_token  # type: ignore[return-value]
        state = await self._shared("_id_task", self._refresh_id_token)
        return state.id_token  # type: ignore[return-value]

    async def refresh_id_token(self, refresh_token: str | None = None) -> CredentialState:
        """Force a new idToken exchange.

        Args:
            refresh_token: Optional refresh token overriding the configured one.
                It is adopted as the current refresh token when the exchange
                succeeds.

        Returns:
            A snapshot of the credential state after the refresh.
        """
        if refresh_token:
            return await self._refresh_id_token(refresh_token)
        return await self._shared("_id_task", self._refresh_id_token)

    async def ensure_refresh_token(self, bootstrap: bool = False) -> str:
        """Return a usable refresh token, issuing one from the account if needed.

        Args:
            bootstrap: Skip the cached/configured token and request a new one
                with the account e-mail and password.
        """
        if not bootstrap:
            token = self._current_refresh_token()
            if token:
                return token
        return await self._shared("_refresh_task", self._bootstrap_refresh_token)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _shared(self, attr: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory`` once for all concurrent callers of the same slot."""
        task: asyncio.Future[T] | None = getattr(self, attr)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            setattr(self, attr, task)
            task.add_done_callback(lambda done: self._clear_slot(attr, done))
        # A cancelled waiter must not cancel the refresh other callers share
        return await asyncio.shield(task)

    def _clear_slot(self, attr: str, task: asyncio.Future[Any]) -> None:
        if getattr(self, attr) is task:
            setattr(self, attr, None)

    async def _refresh_id_token(self, override: str | None = None) -> CredentialState:
        last_error: AuthError | None = None

        refresh = override or self._current_refresh_token()
        if refresh:
            try:
                id_token = await self._exchange(refresh)
            except AuthError as e:
                last_error = e
                if override is None and e.rejected:
                    self._discard_refresh_token(refresh)
            else:
                if override:
                    self.state.refresh_token = override
                    self.state.refresh_expires_at = 0.0
                return self._store_id_token(id_token)

        # A transient failure leaves the refresh token in place for the next call
        if last_error is not None and not last_error.rejected:
            raise last_error
        if not self.settings.has_account_credentials:
            raise last_error or AuthError(
                "Missing refresh token. Set JQ_REFRESH_TOKEN or JQ_EMAIL/JQ_PASSWORD"
            )

        if last_error is not None:
            logger.warning(f"Refresh token rejected, re-issuing from account: {last_error}")
        refresh = await self.ensure_refresh_token(bootstrap=True)
        try:
            id_token = await self._exchange(refresh)
        except AuthError as e:
            if e.rejected:
                self._discard_refresh_token(refresh)
            raise
        return self._store_id_token(id_token)

    def _store_id_token(self, id_token: str) -> CredentialState:
        self.state.id_token = id_token
        self.state.id_expires_at = self._clock() + self.settings.id_token_ttl
        logger.info(f"idToken refreshed, usable for {self.ms_until_expiry() // 1000}s")
        return replace(self.state)

    async def _exchange(self, refresh_token: str) -> str:
        """Exchange a refresh token for an idToken."""
        url = f"{self.settings.api_url}{AUTH_REFRESH_PATH}"
        try:
            res = await self._http.post(
                url, params={"refreshtoken": refresh_token}, timeout=self.settings.timeout
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Auth refresh request failed: {e}") from e

        if res.status_code != 200:
            raise AuthError(
                f"Auth refresh failed: {res.status_code} {_response_detail(res)}",
                status=res.status_code,
            )
        detail = _response_detail(res)
        id_token = detail.get("idToken") if isinstance(detail, dict) else None
        if not id_token:
            raise AuthError("Auth refresh succeeded but idToken missing in response")
        return id_token

    async def _bootstrap_refresh_token(self) -> str:
        """Issue a new refresh token from the account e-mail and password."""
        if not self.settings.has_account_credentials:
            raise AuthError("Missing JQ_EMAIL / JQ_PASSWORD for refresh token bootstrap")

        url = f"{self.settings.api_url}{AUTH_USER_PATH}"
        payload = {"mailaddress": self.settings.email, "password": self.settings.password}
        try:
            res = await self._http.post(url, json=payload, timeout=self.settings.timeout)
        except httpx.HTTPError as e:
            raise AuthError(f"auth_user request failed: {e}") from e

        detail = _response_detail(res)
        refresh = detail.get("refreshToken") if isinstance(detail, dict) else None
        if res.status_code != 200 or not refresh:
            raise AuthError(
                f"auth_user failed: {res.status_code} {detail}", status=res.status_code
            )

        self.state.refresh_token = refresh
        self.state.refresh_expires_at = self._clock() + self.settings.refresh_token_ttl
        logger.info("Issued new refresh token from account credentials")
        return refresh
