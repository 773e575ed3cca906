"""
Async transport for the answer-engine-optimization job service.

Each call is one authenticated request/response exchange. Response envelopes are
unwrapped into the payload, and failures are raised as ApiError carrying the HTTP
status so callers can branch (401 re-authenticate, 429 back off, 422 validation).
"""

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from aeo_client.services.errors import ApiError, MalformedResponseError

logger = logging.getLogger(__name__)


class CredentialProvider(ABC):
    """Supplies the bearer token attached to every request."""

    @abstractmethod
    async def get_token(self) -> Optional[str]:
        """Return the current token, or None for anonymous requests."""

    def invalidate(self) -> None:
        """Forget a token the server rejected."""


class StaticTokenProvider(CredentialProvider):
    """A fixed token, e.g. issued out of band and passed in configuration."""

    def __init__(self, token: Optional[str] = None):
        self.token = token

    async def get_token(self) -> Optional[str]:
        return self.token


class LoginCredentialProvider(CredentialProvider):
    """Logs in with email/password and caches the issued token until it is rejected."""

    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.email = email
        self.password = password
        self.token: Optional[str] = None
        self._transport = transport

    async def get_token(self) -> Optional[str]:
        """Get or refresh the auth token"""
        if self.token:
            return self.token

        if not self.email or not self.password:
            raise ValueError("AEO_API_EMAIL and AEO_API_PASSWORD must be set")

        async with httpx.AsyncClient(base_url=self.base_url, transport=self._transport) as client:
            try:
                response = await client.post(
                    "/api/login",
                    json={"email": self.email, "password": self.password},
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise ApiError(str(exc) or "Network error", 0) from exc

        payload = unwrap_envelope(response)
        token = payload.get("auth_token") if isinstance(payload, dict) else None
        if not token:
            raise ApiError("Login failed", response.status_code if response.status_code >= 400 else 401, payload)
        self.token = token
        logger.info("Authenticated as %s", self.email)
        return self.token

    def invalidate(self) -> None:
        self.token = None


def _is_ok(status: int) -> bool:
    return 200 <= status < 300


def unwrap_envelope(response: httpx.Response) -> Any:
    """
    Reduce a response to its payload or raise ApiError.

    Tolerated shapes:
        {"status": 200, "message": "...", "response": T}
        {"status": "success" | "error", "message": "...", "data": T}
        {"success": true, "message": "...", "data": T}
        T (bare payload)
    """
    http_status = response.status_code
    if not response.content:
        if _is_ok(http_status):
            return None
        raise ApiError(response.reason_phrase or "An error occurred", http_status)

    try:
        body = response.json()
    except ValueError as exc:
        if _is_ok(http_status):
            raise MalformedResponseError("Response body is not JSON", response.text) from exc
        raise ApiError(response.text or response.reason_phrase or "An error occurred", http_status) from exc

    if not isinstance(body, dict):
        if _is_ok(http_status):
            return body
        raise ApiError(response.reason_phrase or "An error occurred", http_status, body)

    message = body.get("message") if isinstance(body.get("message"), str) else None
    if not _is_ok(http_status):
        raise ApiError(message or response.reason_phrase or "An error occurred", http_status, body.get("response", body))

    # Envelope statuses can report failure inside a 200
    failed_status = http_status if http_status >= 400 else 400
    envelope_status = body.get("status")

    if isinstance(body.get("success"), bool) and ("data" in body or not body["success"]):
        if not body["success"]:
            raise ApiError(message or "Request failed", failed_status, body.get("data"))
        return body.get("data")

    if isinstance(envelope_status, int) and not isinstance(envelope_status, bool) and "response" in body:
        if _is_ok(envelope_status):
            return body.get("response")
        raise ApiError(message or "An error occurred", envelope_status, body.get("response"))

    if envelope_status in ("success", "error") and ("data" in body or "response" in body):
        if envelope_status == "error":
            raise ApiError(message or "An error occurred", failed_status, body.get("data", body.get("response")))
        return body["data"] if "data" in body else body["response"]

    return body


class ApiClient:
    """An async wrapper around the job service REST API. Awaitable calls keep the
    event loop free while requests are in flight, so independent poll sessions
    interleave instead of serializing."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        credentials: Optional[CredentialProvider] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or os.getenv("AEO_API_BASE_URL")
        self.credentials = credentials or StaticTokenProvider()
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _inject_token(self, request: httpx.Request) -> None:
        """Event hook to inject Authorization header on each request"""
        token = await self.credentials.get_token()
        if token:
            request.headers["Authorization"] = f"Bearer {token}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client"""
        if self._client is None:
            if not self.base_url:
                raise ValueError(
                    "AEO_API_BASE_URL must be set. "
                    "Set it as an environment variable or pass base_url to ApiClient."
                )
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
                transport=self._transport,
                event_hooks={
                    "request": [self._inject_token]
                },
            )
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one exchange and return the unwrapped payload.

        Raises:
            ApiError: non-2xx status (HTTP or envelope), or status 0 when the
                request failed at the connection level.
            MalformedResponseError: a 2xx response whose body is not JSON.
        """
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise ApiError(str(exc) or "Network error", 0) from exc

        try:
            return unwrap_envelope(response)
        except ApiError as exc:
            if exc.status == 401:
                self.credentials.invalidate()
            logger.debug("%s %s -> %s %s", method, path, exc.status, exc.message)
            raise

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, json=json)

    async def close(self):
        """Close httpx client connection"""
        if self._client:
            await self._client.aclose()
            self._client = None
