"""Tests for the possync HTTP client."""

import json

import httpx
import pytest

from possync.client.api import (
    AuthenticationError,
    ConflictError,
    HTTPClient,
    NetworkError,
    NotFoundError,
    PushResult,
    ServerChange,
    ServerError,
    ValidationError,
)
from possync.core.config import ServerConfig


def make_config(
    server_url: str = "http://test", token: str = "token123"
) -> ServerConfig:
    """Create a ServerConfig for testing."""
    return ServerConfig(server_url=server_url, token=token)


class TestPushResult:
    """Tests for PushResult dataclass."""

    def test_from_dict_accepted(self) -> None:
        """Should parse an accepted result with a canonical id."""
        result = PushResult.from_dict(
            {"client_id": 3, "status": "accepted", "remote_id": 482}
        )

        assert result.client_id == 3
        assert result.accepted is True
        assert result.remote_id == "482"
        assert result.error is None

    def test_from_dict_rejected(self) -> None:
        """Should parse a rejected result with error and code."""
        result = PushResult.from_dict(
            {"client_id": "4", "status": "rejected", "error": "bad total", "code": 422}
        )

        assert result.client_id == 4
        assert result.accepted is False
        assert result.remote_id is None
        assert result.error == "bad total"
        assert result.code == 422


class TestServerChange:
    """Tests for ServerChange dataclass."""

    def test_from_dict(self) -> None:
        """Should create ServerChange from dictionary."""
        change = ServerChange.from_dict(
            {
                "entity_type": "product",
                "entity_id": 12,
                "operation": "update",
                "data": {"price": 3.5},
                "updated_at": "2025-01-01T10:00:00Z",
            }
        )

        assert change.entity_type == "product"
        assert change.entity_id == "12"
        assert change.data == {"price": 3.5}
        assert change.is_delete is False

    def test_delete_without_data(self) -> None:
        """Delete changes may omit data."""
        change = ServerChange.from_dict(
            {"entity_type": "product", "entity_id": "12", "operation": "delete", "data": None}
        )

        assert change.is_delete is True
        assert change.data == {}


class TestHTTPClient:
    """Tests for HTTPClient."""

    def test_health_check_success(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return True when backend is healthy."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        with HTTPClient(make_config()) as client:
            assert client.health_check() is True

    def test_health_check_failure(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return False when backend answers with an error."""
        httpx_mock.add_response(url="http://test/health", status_code=503)

        with HTTPClient(make_config()) as client:
            assert client.health_check() is False

    def test_health_check_unreachable(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return False when the connection fails."""
        httpx_mock.add_exception(httpx.ConnectError("refused"), url="http://test/health")

        with HTTPClient(make_config()) as client:
            assert client.health_check() is False

    def test_sends_bearer_token(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should authenticate every request with the configured token."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        with HTTPClient(make_config()) as client:
            client.health_check()

        request = httpx_mock.get_request()
        assert request.headers["Authorization"] == "Bearer token123"

    def test_no_token_no_header(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should not send an Authorization header without a token."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        with HTTPClient(make_config(token="")) as client:
            client.health_check()

        assert "Authorization" not in httpx_mock.get_request().headers

    def test_push_batch(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should post operations and parse per-record results."""
        httpx_mock.add_response(
            method="POST",
            url="http://test/sync/push",
            json={
                "results": [
                    {"client_id": 1, "status": "accepted", "remote_id": "482"},
                    {"client_id": 2, "status": "rejected", "error": "stale", "code": 409},
                ]
            },
        )
        operations = [
            {
                "client_id": 1,
                "entity_type": "sale",
                "entity_id": "local-7",
                "local_id": "local-7",
                "operation": "create",
                "payload": {"total": 12.5},
            },
            {
                "client_id": 2,
                "entity_type": "product",
                "entity_id": "9",
                "local_id": "9",
                "operation": "update",
                "payload": {"stock": 4},
            },
        ]

        with HTTPClient(make_config()) as client:
            results = client.push_batch(operations)

        assert [r.client_id for r in results] == [1, 2]
        assert results[0].accepted and results[0].remote_id == "482"
        assert not results[1].accepted and results[1].code == 409
        body = json.loads(httpx_mock.get_request().content)
        assert body == {"operations": operations}

    def test_push_batch_auth_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise AuthenticationError on 401."""
        httpx_mock.add_response(
            method="POST",
            url="http://test/sync/push",
            status_code=401,
            json={"detail": "Token expired"},
        )

        with HTTPClient(make_config()) as client, pytest.raises(AuthenticationError) as exc:
            client.push_batch([])

        assert exc.value.status_code == 401
        assert "Token expired" in str(exc.value)

    def test_push_batch_forbidden(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should treat 403 as an authentication failure."""
        httpx_mock.add_response(method="POST", url="http://test/sync/push", status_code=403)

        with HTTPClient(make_config()) as client, pytest.raises(AuthenticationError):
            client.push_batch([])

    def test_push_batch_server_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise ServerError on 5xx."""
        httpx_mock.add_response(method="POST", url="http://test/sync/push", status_code=502)

        with HTTPClient(make_config()) as client, pytest.raises(ServerError) as exc:
            client.push_batch([])

        assert exc.value.status_code == 502

    def test_push_batch_rate_limited(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should treat 429 as a retriable server error."""
        httpx_mock.add_response(method="POST", url="http://test/sync/push", status_code=429)

        with HTTPClient(make_config()) as client, pytest.raises(ServerError):
            client.push_batch([])

    def test_push_batch_conflict(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise ConflictError on 409."""
        httpx_mock.add_response(method="POST", url="http://test/sync/push", status_code=409)

        with HTTPClient(make_config()) as client, pytest.raises(ConflictError):
            client.push_batch([])

    def test_push_batch_validation_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise ValidationError on other 4xx."""
        httpx_mock.add_response(
            method="POST",
            url="http://test/sync/push",
            status_code=422,
            json={"detail": "operations must be a list"},
        )

        with HTTPClient(make_config()) as client, pytest.raises(ValidationError) as exc:
            client.push_batch([])

        assert exc.value.status_code == 422

    def test_not_found(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should raise NotFoundError on 404."""
        httpx_mock.add_response(method="POST", url="http://test/sync/push", status_code=404)

        with HTTPClient(make_config()) as client, pytest.raises(NotFoundError):
            client.push_batch([])

    def test_network_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should wrap transport failures in NetworkError."""
        httpx_mock.add_exception(
            httpx.ReadTimeout("timed out"), method="POST", url="http://test/sync/push"
        )

        with HTTPClient(make_config()) as client, pytest.raises(NetworkError) as exc:
            client.push_batch([])

        assert isinstance(exc.value, ConnectionError)
        assert exc.value.status_code is None

    def test_get_changes(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should get changes since a watermark."""
        httpx_mock.add_response(
            url="http://test/sync/changes?limit=100&since=w-41",
            json={
                "changes": [
                    {
                        "entity_type": "product",
                        "entity_id": "12",
                        "operation": "update",
                        "data": {"price": 3.5},
                        "updated_at": "2025-01-01T10:00:00Z",
                    }
                ],
                "has_more": True,
                "watermark": "w-42",
            },
        )

        with HTTPClient(make_config()) as client:
            result = client.get_changes("w-41", limit=100)

        assert len(result.changes) == 1
        assert result.changes[0].entity_id == "12"
        assert result.has_more is True
        assert result.watermark == "w-42"

    def test_get_changes_from_start(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should omit since on the first pull."""
        httpx_mock.add_response(
            url="http://test/sync/changes?limit=500",
            json={"changes": [], "has_more": False, "watermark": None},
        )

        with HTTPClient(make_config()) as client:
            result = client.get_changes(None)

        assert result.changes == []
        assert result.has_more is False
        assert result.watermark is None
