from __future__ import annotations

import base64
from typing import Any

import bcrypt
import pytest

from ollama_gateway.gateway.auth import AuthConfigurationError, parse_basic_credentials
from tests.client_test_utils import build_test_client


def _basic(username: str, password: str) -> dict[str, str]:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return {"Authorization": f"Basic {token}"}


def _hashes(**users: str) -> str:
    return ",".join(
        f"{name}:{bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode()}"
        for name, password in users.items()
    )


def test_routes_open_when_auth_disabled(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch) as client:
        response = client.get("/api/endpoints")
        assert response.status_code == 200


def test_rejects_missing_credentials_with_basic_challenge(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch,
        BASIC_AUTH_HASHES=_hashes(admin="s3cret"),
        BASIC_AUTH_REALM="Models",
    ) as client:
        response = client.get("/api/endpoints")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == 'Basic realm="Models"'
        assert response.json()["success"] is False


def test_rejects_wrong_password_and_unknown_user(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, BASIC_AUTH_HASHES=_hashes(admin="s3cret")) as client:
        assert client.get("/api/endpoints", headers=_basic("admin", "nope")).status_code == 401
        assert client.get("/api/endpoints", headers=_basic("eve", "s3cret")).status_code == 401


def test_accepts_matching_password(monkeypatch: Any) -> None:
    with build_test_client(
        monkeypatch, BASIC_AUTH_HASHES=_hashes(admin="s3cret", ops="other")
    ) as client:
        response = client.get("/api/endpoints", headers=_basic("ops", "other"))
        assert response.status_code == 200


def test_health_stays_open_with_auth(monkeypatch: Any) -> None:
    with build_test_client(monkeypatch, BASIC_AUTH_HASHES=_hashes(admin="s3cret")) as client:
        assert client.get("/health").status_code == 200


def test_required_auth_without_users_fails_startup(monkeypatch: Any) -> None:
    with pytest.raises(AuthConfigurationError):
        with build_test_client(monkeypatch, BASIC_AUTH_REQUIRED="true"):
            pass


def test_parse_basic_credentials() -> None:
    assert parse_basic_credentials(_basic("a", "b:c")["Authorization"]) == ("a", "b:c")
    assert parse_basic_credentials("Bearer token") is None
    assert parse_basic_credentials("Basic !!!") is None
    assert parse_basic_credentials("Basic " + base64.b64encode(b"nocolon").decode()) is None
