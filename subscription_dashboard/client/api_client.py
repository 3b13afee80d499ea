"""
Async client for the subscription REST API.

Unwraps the {success, data, message} envelope strictly: anything that is not
a success envelope raises ApiError. A 401 triggers one token refresh, shared
between concurrent callers holding the same credential.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from subscription_dashboard.client.single_flight import SingleFlight

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

_refresh_flight = SingleFlight()


class ApiError(Exception):
    """Non-success response (or transport failure, status 0)."""

    def __init__(self, status: int, code: str, message: str, request_id: Optional[str] = None):
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message
        self.request_id = request_id

    @property
    def retryable(self) -> bool:
        return self.status == 0 or self.status >= 500


def unwrap_envelope(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        raise ApiError(response.status_code, "invalid_response", "Response is not JSON")

    if not isinstance(body, dict) or not isinstance(body.get("success"), bool):
        raise ApiError(response.status_code, "invalid_envelope", "Response is not an API envelope")

    if not body["success"] or response.status_code >= 400:
        error = body.get("error") or {}
        raise ApiError(
            response.status_code,
            error.get("code") or "error",
            body.get("message") or "Request failed",
            error.get("request_id"),
        )
    return body.get("data")


class SubscriptionClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        single_flight: Optional[SingleFlight] = None,
    ):
        """
        Args:
            base_url: API root, e.g. http://localhost:8000
            token: bearer token
            user_id: X-User-Id for dev/test deployments without tokens
            token_provider: coroutine returning a fresh token after a 401
            transport: custom httpx transport (tests)
            single_flight: refresh coordinator; defaults to a process-wide one
        """
        self.token = token
        self.user_id = user_id
        self._token_provider = token_provider
        self._single_flight = single_flight or _refresh_flight
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def __aenter__(self) -> "SubscriptionClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user_id:
            headers["X-User-Id"] = self.user_id
        return headers

    def _credential_key(self) -> str:
        return f"token:{self.token}" if self.token else f"user:{self.user_id}"

    async def refresh_token(self) -> str:
        """Refresh once per credential no matter how many callers hit 401 together."""
        if self._token_provider is None:
            raise ApiError(401, "unauthenticated", "No token provider configured")
        token = await self._single_flight.do(self._credential_key(), self._token_provider)
        self.token = token
        return token

    async def _request(self, method: str, path: str, *, json: Any = None, params: Optional[Dict[str, Any]] = None, retry_auth: bool = True) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=self._headers())
        except httpx.TransportError as e:
            raise ApiError(0, "network_error", str(e))

        if response.status_code == 401 and retry_auth and self._token_provider is not None:
            logger.debug(f"401 on {method} {path}, refreshing token")
            await self.refresh_token()
            return await self._request(method, path, json=json, params=params, retry_auth=False)

        return unwrap_envelope(response)

    async def list_plans(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/api/plans")

    async def get_plan(self, plan_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/plans/{plan_id}")

    async def create_checkout_session(self, plan_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/checkout-sessions", json={"plan_id": plan_id})

    async def get_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/checkout-sessions/{session_id}")

    async def get_current_subscription(self) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", "/api/subscriptions/me")
        return (data or {}).get("subscription")

    async def check_access(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/subscriptions/me/access")

    async def subscribe(self, plan_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/api/subscriptions/{plan_id}/subscribe")

    async def cancel(self, subscription_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", "/api/subscriptions/cancel", json={"subscription_id": subscription_id})

    async def upgrade(self, new_plan_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/subscriptions/upgrade", json={"new_plan_id": new_plan_id})

    async def list_subscriptions(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return await self._request("GET", "/api/subscriptions", params=params)
