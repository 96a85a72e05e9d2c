from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ollama_gateway.gateway.backend_client import (
    BackendHTTPError,
    BackendUnreachable,
    normalize_model_details,
)
from tests.client_test_utils import ChunkedBody, build_backend_client


def test_calls_use_newly_selected_target_and_its_credential() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"models": []})

    client = build_backend_client(
        handler, endpoints="http://gpu-a:11434_key-a,http://gpu-b:11434_key-b"
    )
    client.target_store.set("http://gpu-b:11434")
    asyncio.run(client.running_models())

    assert str(seen[0].url) == "http://gpu-b:11434/api/ps"
    assert seen[0].headers["Authorization"] == "Bearer key-b"
    assert seen[0].headers["Content-Type"] == "application/json"
    asyncio.run(client.close())


def test_missing_credential_omits_authorization_header() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"models": []})

    client = build_backend_client(handler, endpoints="http://gpu-a:11434")
    client.target_store.set("http://gpu-a:11434")
    asyncio.run(client.list_models())

    assert "Authorization" not in seen[0].headers
    asyncio.run(client.close())


def test_null_bearer_compat_sends_literal_null() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"models": []})

    client = build_backend_client(handler, null_bearer_compat=True)
    asyncio.run(client.list_models())

    assert seen[0].headers["Authorization"] == "Bearer null"
    asyncio.run(client.close())


def test_connectivity_check_targets_given_url_with_its_credential() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"models": []})

    client = build_backend_client(handler, endpoints="http://gpu-b:11434_key-b")
    asyncio.run(client.probe("http://gpu-b:11434"))

    assert str(seen[0].url) == "http://gpu-b:11434/api/tags"
    assert seen[0].headers["Authorization"] == "Bearer key-b"
    assert client.target_store.get() == "http://localhost:11434"
    asyncio.run(client.close())


def test_non_success_status_raises_backend_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "model not found"})

    client = build_backend_client(handler)
    with pytest.raises(BackendHTTPError) as exc_info:
        asyncio.run(client.show_model("missing"))

    assert exc_info.value.status_code == 404
    assert "model not found" in exc_info.value.cause
    asyncio.run(client.close())


def test_error_status_with_unreadable_body_still_raises_backend_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            502,
            stream=ChunkedBody([b"partial"], error=httpx.ReadError("reset")),
        )

    client = build_backend_client(handler)
    with pytest.raises(BackendHTTPError) as exc_info:
        asyncio.run(client.open_stream("/api/pull", {"model": "llama3"}))

    assert exc_info.value.status_code == 502
    assert exc_info.value.cause == "Request failed with status code 502"
    asyncio.run(client.close())


def test_transport_failure_raises_backend_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    client = build_backend_client(handler)
    with pytest.raises(BackendUnreachable) as exc_info:
        asyncio.run(client.running_models())

    assert "Connection refused" in exc_info.value.cause
    asyncio.run(client.close())


def _listing_handler(failing: set[str]):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(
                200,
                json={
                    "models": [
                        {"name": "mistral", "size": 1},
                        {"name": "alpaca", "size": 2},
                        {"name": "Llama3", "size": 3},
                    ]
                },
            )
        name = json.loads(request.content)["name"]
        if name in failing:
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(
            200,
            json={"details": {"family": f"{name}-family", "families": None}},
        )

    return handler


def test_model_listing_isolates_detail_failures_and_sorts_by_name() -> None:
    client = build_backend_client(_listing_handler(failing={"mistral"}))
    models = asyncio.run(client.list_models_with_details())

    assert [model["name"] for model in models] == ["alpaca", "Llama3", "mistral"]
    by_name = {model["name"]: model for model in models}
    assert "details" not in by_name["mistral"]
    assert by_name["mistral"] == {"name": "mistral", "size": 1}
    assert by_name["alpaca"]["details"] == {
        "parent_model": "",
        "format": "",
        "family": "alpaca-family",
        "parameter_size": "",
        "quantization_level": "",
        "families": [],
    }
    assert by_name["Llama3"]["size"] == 3
    asyncio.run(client.close())


def test_model_listing_sends_show_request_with_model_name() -> None:
    shown: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen"}]})
        assert request.method == "POST"
        shown.append(json.loads(request.content))
        return httpx.Response(200, json={})

    client = build_backend_client(handler)
    asyncio.run(client.list_models_with_details())

    assert shown == [{"name": "qwen"}]
    asyncio.run(client.close())


def test_model_listing_fails_when_list_call_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    client = build_backend_client(handler)
    with pytest.raises(BackendHTTPError):
        asyncio.run(client.list_models_with_details())
    asyncio.run(client.close())


def test_batch_delete_reports_failures_without_blocking_others() -> None:
    attempted: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        assert request.url.path == "/api/delete"
        name = json.loads(request.content)["name"]
        attempted.append(name)
        if name == "b":
            return httpx.Response(500, json={"error": "locked"})
        return httpx.Response(200)

    client = build_backend_client(handler)
    failed = asyncio.run(client.delete_models(["a", "b", "c"]))

    assert failed == ["b"]
    assert sorted(attempted) == ["a", "b", "c"]
    asyncio.run(client.close())


def test_batch_delete_reports_failed_names_in_request_order() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        name = json.loads(request.content)["name"]
        if name in {"z", "x"}:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200)

    client = build_backend_client(handler)
    failed = asyncio.run(client.delete_models(["z", "y", "x"]))

    assert failed == ["z", "x"]
    asyncio.run(client.close())


def test_normalize_model_details_defaults_missing_fields() -> None:
    assert normalize_model_details(None) == {
        "parent_model": "",
        "format": "",
        "family": "",
        "parameter_size": "",
        "quantization_level": "",
        "families": [],
    }
    assert normalize_model_details({"families": ["llama"], "format": "gguf"})[
        "families"
    ] == ["llama"]
