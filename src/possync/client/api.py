"""HTTP client for the backend sync API.

This module provides:
- HTTPClient: HTTP client for communicating with the backend
- Batch push of queued mutations
- Incremental pull of server-side changes since a watermark
- Reachability probe used by the connectivity monitor
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from possync.core.config import ServerConfig

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(APIError):
    """Authentication failed or token lacks permission."""


class ConflictError(APIError):
    """Server state changed since the client last saw it."""


class NotFoundError(APIError):
    """Resource not found."""


class ValidationError(APIError):
    """Backend rejected the request as invalid (non-retriable)."""


class ServerError(APIError):
    """Backend failed or is overloaded (retriable)."""


class NetworkError(APIError, ConnectionError):
    """Request never got a response (timeout, connection refused)."""


# Status codes worth retrying even though the server answered
RETRIABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass
class PushResult:
    """Per-record outcome returned by the batch-push endpoint."""

    client_id: int
    accepted: bool
    remote_id: str | None = None
    error: str | None = None
    code: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PushResult:
        """Create from API response dictionary."""
        remote_id = data.get("remote_id")
        return cls(
            client_id=int(data["client_id"]),
            accepted=data.get("status") == "accepted",
            remote_id=str(remote_id) if remote_id is not None else None,
            error=data.get("error"),
            code=data.get("code"),
        )


@dataclass
class ServerChange:
    """Entity change from the server (for incremental pull)."""

    entity_type: str
    entity_id: str
    operation: str  # create, update, delete
    data: dict[str, Any] = field(default_factory=dict)
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerChange:
        """Create from API response dictionary."""
        return cls(
            entity_type=data["entity_type"],
            entity_id=str(data["entity_id"]),
            operation=data.get("operation", "update"),
            data=data.get("data") or {},
            updated_at=data.get("updated_at"),
        )

    @property
    def is_delete(self) -> bool:
        """Check if the entity was deleted on the server."""
        return self.operation == "delete"


@dataclass
class ChangesResult:
    """Result of get_changes API call."""

    changes: list[ServerChange]
    has_more: bool
    watermark: str | None


def _error_detail(response: httpx.Response, default: str) -> str:
    """Extract the error detail from a response body, if any."""
    try:
        body = response.json()
    except ValueError:
        return response.text or default
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or default)
    return default


class HTTPClient:
    """HTTP client for the backend sync API."""

    def __init__(self, config: ServerConfig) -> None:
        """Initialize the HTTP client.

        Args:
            config: Server configuration with URL, token and timeout.
        """
        self._config = config
        headers = {"Content-Type": "application/json"}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            headers=headers,
            verify=config.verify_ssl,
        )

    @property
    def config(self) -> ServerConfig:
        """Get the server configuration."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        code = response.status_code
        if code in (401, 403):
            raise AuthenticationError(_error_detail(response, "Invalid or expired token"), code)
        if code == 404:
            raise NotFoundError(_error_detail(response, "Resource not found"), code)
        if code == 409:
            raise ConflictError(_error_detail(response, "Conflict"), code)
        if code >= 500 or code in RETRIABLE_STATUS_CODES:
            raise ServerError(_error_detail(response, "Server error"), code)
        if code >= 400:
            raise ValidationError(_error_detail(response, "Rejected"), code)
        return response

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, turning transport failures into NetworkError."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the backend is reachable.

        Returns:
            True if the backend answered the health probe with 200.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Push ===

    def push_batch(self, operations: list[dict[str, Any]]) -> list[PushResult]:
        """Push an ordered list of mutations.

        Args:
            operations: Serialized mutations, each carrying its queue id
                as "client_id".

        Returns:
            One PushResult per operation the server reported on.

        Raises:
            NetworkError: If the request got no response.
            AuthenticationError: If the token was rejected.
            ServerError: If the backend failed the whole batch transiently.
            ValidationError: If the backend rejected the whole batch.
        """
        response = self._request("POST", "/sync/push", json={"operations": operations})
        data = response.json()
        return [PushResult.from_dict(r) for r in data.get("results", [])]

    # === Pull ===

    def get_changes(self, since: str | None, limit: int = 500) -> ChangesResult:
        """Get entity changes newer than a watermark.

        Clients should store the watermark from the response and use it
        as 'since' for subsequent calls.

        Args:
            since: Watermark from the previous pull (None = from the start).
            limit: Maximum number of changes to return.

        Returns:
            ChangesResult with list of changes and the new watermark.
        """
        params = {"limit": str(limit)}
        if since:
            params["since"] = since
        response = self._request("GET", "/sync/changes", params=params)
        data = response.json()
        return ChangesResult(
            changes=[ServerChange.from_dict(c) for c in data.get("changes", [])],
            has_more=bool(data.get("has_more", False)),
            watermark=data.get("watermark"),
        )
