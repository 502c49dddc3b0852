"""Async API client that refreshes its access token at most once at a time.

When several requests hit 401 together, the first one performs the refresh
exchange and the rest wait for its outcome, then each retries once with the
new access token.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from musicez.logging import get_logger

logger = get_logger(__name__)

NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
NETWORK_ERROR = "NETWORK_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"
NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
REFRESH_CANCELLED = "REFRESH_CANCELLED"

RefreshExchange = Callable[[str], Awaitable[Tuple[str, str]]]


class ApiError(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def __repr__(self) -> str:
        return f"ApiError(code={self.code!r}, status_code={self.status_code!r})"


class RefreshFailed(ApiError):
    """The refresh exchange failed; local credentials have been cleared."""


class RefreshCoordinator:
    def __init__(
        self,
        refresh_exchange: RefreshExchange,
        *,
        on_auth_cleared: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._exchange = refresh_exchange
        self._on_auth_cleared = on_auth_cleared
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.exchange_count = 0
        self._refreshing = False
        self._waiters: List[asyncio.Future] = []

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    async def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        if self._on_auth_cleared is not None:
            await self._on_auth_cleared()

    def _settle(
        self, *, result: Optional[str] = None, error: Optional[BaseException] = None
    ) -> None:
        # Drop the flag before waking anyone so late callers start a fresh exchange
        waiters, self._waiters = self._waiters, []
        self._refreshing = False
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)

    async def refresh(self) -> str:
        """Return a fresh access token, sharing one exchange among concurrent callers."""
        if self._refreshing:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter

        refresh_token = self.refresh_token
        if not refresh_token:
            await self.clear()
            raise RefreshFailed(NO_REFRESH_TOKEN, "No refresh token available")

        self._refreshing = True
        self.exchange_count += 1
        try:
            access_token, new_refresh_token = await self._exchange(refresh_token)
        except asyncio.CancelledError:
            self._settle(error=RefreshFailed(REFRESH_CANCELLED, "Token refresh was cancelled"))
            raise
        except Exception as exc:
            error = (
                exc
                if isinstance(exc, RefreshFailed)
                else RefreshFailed(
                    getattr(exc, "code", UNKNOWN_ERROR),
                    getattr(exc, "message", None) or str(exc) or "Token refresh failed",
                    status_code=getattr(exc, "status_code", None),
                )
            )
            self._settle(error=error)
            logger.warning("token_refresh_failed", code=error.code)
            await self.clear()
            if error is exc:
                raise
            raise error from exc

        self.set_tokens(access_token, new_refresh_token)
        self._settle(result=access_token)
        logger.debug("token_refreshed")
        return access_token


def _tokens_from(payload: Any) -> Tuple[str, str]:
    try:
        tokens = payload["tokens"]
        return tokens["access_token"], tokens["refresh_token"]
    except (KeyError, TypeError):
        raise ApiError(UNKNOWN_ERROR, "Response did not include tokens") from None


class AuthenticatedClient:
    """``httpx.AsyncClient`` wrapper that attaches and refreshes bearer tokens."""

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        base_url: str,
        coordinator: Optional[RefreshCoordinator] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_auth_cleared: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.coordinator = coordinator or RefreshCoordinator(
            self._exchange_refresh_token, on_auth_cleared=on_auth_cleared
        )

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str],
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            return await self._http.request(
                method, url, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise ApiError(NETWORK_TIMEOUT, "Request timed out") from exc
        except httpx.RequestError as exc:
            raise ApiError(NETWORK_ERROR, "Network error occurred") from exc

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_success:
            if isinstance(payload, dict) and "data" in payload:
                return payload["data"]
            return payload

        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            raise ApiError(
                error.get("code") or UNKNOWN_ERROR,
                error.get("message") or "An unexpected error occurred",
                status_code=response.status_code,
                details=error.get("details"),
            )
        raise ApiError(
            UNKNOWN_ERROR,
            "An unexpected error occurred",
            status_code=response.status_code,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> Any:
        token = self.coordinator.access_token if authenticated else None
        response = await self._send(method, url, token=token, json=json, params=params)

        if response.status_code == 401 and authenticated and token:
            current = self.coordinator.access_token
            if current and current != token:
                # Another request already refreshed while this one was in flight
                new_token = current
            else:
                new_token = await self.coordinator.refresh()
            response = await self._send(method, url, token=new_token, json=json, params=params)

        return self._unwrap(response)

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return await self.request("POST", url, **kwargs)

    async def _exchange_refresh_token(self, refresh_token: str) -> Tuple[str, str]:
        response = await self._send(
            "POST", "/auth/refresh", token=None, json={"refresh_token": refresh_token}
        )
        return _tokens_from(self._unwrap(response))

    async def _authenticate(self, url: str, body: Dict[str, Any]) -> Any:
        data = await self.request("POST", url, json=body, authenticated=False)
        access_token, refresh_token = _tokens_from(data)
        self.coordinator.set_tokens(access_token, refresh_token)
        return data

    async def login(self, email: str, password: str) -> Any:
        return await self._authenticate("/auth/login", {"email": email, "password": password})

    async def register(
        self, email: str, password: str, name: Optional[str] = None
    ) -> Any:
        body: Dict[str, Any] = {"email": email, "password": password}
        if name:
            body["name"] = name
        return await self._authenticate("/auth/register", body)

    async def logout(self) -> None:
        """Revoke the current refresh token; local credentials are cleared either way.

        A failed revocation is logged, not raised: the server-side session
        simply ages out.
        """
        refresh_token = self.coordinator.refresh_token
        try:
            if refresh_token:
                await self.request(
                    "POST",
                    "/auth/logout",
                    json={"refresh_token": refresh_token},
                    authenticated=False,
                )
        except ApiError as error:
            logger.warning("logout_request_failed", code=error.code, status_code=error.status_code)
        finally:
            await self.coordinator.clear()

    async def logout_all(self) -> Optional[int]:
        """Revoke every session of the user; returns the count, or ``None`` if the call failed."""
        try:
            data = await self.post("/auth/logout-all")
        except ApiError as error:
            logger.warning(
                "logout_all_request_failed", code=error.code, status_code=error.status_code
            )
            return None
        finally:
            await self.coordinator.clear()
        return data.get("revoked") if isinstance(data, dict) else None


__all__ = [
    "ApiError",
    "RefreshFailed",
    "RefreshCoordinator",
    "AuthenticatedClient",
    "NETWORK_TIMEOUT",
    "NETWORK_ERROR",
    "UNKNOWN_ERROR",
]
