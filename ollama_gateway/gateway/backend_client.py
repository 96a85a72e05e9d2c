from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ollama_gateway.endpoints import EndpointRegistry
from ollama_gateway.gateway.active_target import ActiveTargetStore

logger = logging.getLogger("uvicorn.error")

DETAIL_STRING_FIELDS = (
    "parent_model",
    "format",
    "family",
    "parameter_size",
    "quantization_level",
)


class BackendError(RuntimeError):
    """A backend call failed; ``cause`` carries the underlying message."""

    def __init__(self, cause: str) -> None:
        super().__init__(cause)
        self.cause = cause


class BackendUnreachable(BackendError):
    pass


class BackendHTTPError(BackendError):
    def __init__(self, status_code: int, cause: str) -> None:
        super().__init__(cause)
        self.status_code = status_code


def _request_error_message(exc: httpx.RequestError, request: httpx.Request) -> str:
    message = str(exc).strip() or repr(exc)
    return f"{exc.__class__.__name__} {request.method} {request.url}: {message}"


def _http_error_message(response: httpx.Response, body: bytes) -> str:
    snippet = body[:512].decode("utf-8", errors="replace").strip()
    message = f"Request failed with status code {response.status_code}"
    if snippet:
        message = f"{message}: {snippet}"
    return message


def normalize_model_details(raw: Any) -> dict[str, Any]:
    details = raw if isinstance(raw, dict) else {}
    normalized: dict[str, Any] = {
        name: details.get(name) or "" for name in DETAIL_STRING_FIELDS
    }
    families = details.get("families")
    normalized["families"] = families if isinstance(families, list) else []
    return normalized


def _model_sort_key(model: dict[str, Any]) -> tuple[str, str]:
    name = str(model.get("name") or "")
    return name.casefold(), name


class BackendClient:
    def __init__(
        self,
        registry: EndpointRegistry,
        target_store: ActiveTargetStore,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        connect_timeout_seconds: float | None = None,
        null_bearer_compat: bool = False,
    ) -> None:
        self.registry = registry
        self.target_store = target_store
        self.null_bearer_compat = null_bearer_compat
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def headers_for(self, url: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        credential = self.registry.credential_for(url)
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        elif self.null_bearer_compat:
            headers["Authorization"] = "Bearer null"
        return headers

    def _build_request(
        self,
        method: str,
        path: str,
        json: Any = None,
        *,
        base_url: str | None = None,
    ) -> httpx.Request:
        target = base_url if base_url is not None else self.target_store.get()
        try:
            return self.client.build_request(
                method=method,
                url=f"{target.rstrip('/')}{path}",
                json=json,
                headers=self.headers_for(target),
            )
        except httpx.InvalidURL as exc:
            raise BackendUnreachable(f"InvalidURL {target!r}: {exc}") from exc

    async def _send(self, request: httpx.Request, *, stream: bool) -> httpx.Response:
        try:
            response = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            logger.warning(
                "backend_request_error method=%s url=%s error_type=%s error=%s",
                request.method,
                request.url,
                exc.__class__.__name__,
                exc,
            )
            raise BackendUnreachable(_request_error_message(exc, request)) from exc

        if response.is_success:
            return response

        try:
            body = await response.aread()
        except (httpx.HTTPError, httpx.StreamError) as exc:
            logger.warning(
                "backend_error_body_unreadable method=%s url=%s status=%d error=%s",
                request.method,
                request.url,
                response.status_code,
                exc,
            )
            body = b""
        finally:
            await response.aclose()
        logger.warning(
            "backend_http_error method=%s url=%s status=%d",
            request.method,
            request.url,
            response.status_code,
        )
        raise BackendHTTPError(response.status_code, _http_error_message(response, body))

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        *,
        base_url: str | None = None,
    ) -> httpx.Response:
        request = self._build_request(method, path, json, base_url=base_url)
        return await self._send(request, stream=False)

    async def request_json(
        self,
        method: str,
        path: str,
        json: Any = None,
        *,
        base_url: str | None = None,
    ) -> Any:
        response = await self.request(method, path, json, base_url=base_url)
        try:
            return response.json()
        except ValueError as exc:
            raise BackendHTTPError(
                response.status_code, f"Invalid JSON from backend: {exc}"
            ) from exc

    async def open_stream(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        request = self._build_request("POST", path, payload)
        return await self._send(request, stream=True)

    async def probe(self, url: str) -> None:
        await self.request("GET", "/api/tags", base_url=url)

    async def running_models(self) -> Any:
        return await self.request_json("GET", "/api/ps")

    async def list_models(self) -> list[dict[str, Any]]:
        payload = await self.request_json("GET", "/api/tags")
        models = payload.get("models") if isinstance(payload, dict) else None
        if not isinstance(models, list):
            raise BackendError("Backend model listing has no 'models' list")
        return [model for model in models if isinstance(model, dict)]

    async def show_model(self, name: str) -> dict[str, Any]:
        payload = await self.request_json("POST", "/api/show", {"name": name})
        return payload if isinstance(payload, dict) else {}

    async def delete_model(self, name: str) -> None:
        await self.request("DELETE", "/api/delete", {"name": name})

    async def _with_details(self, model: dict[str, Any]) -> dict[str, Any]:
        try:
            shown = await self.show_model(str(model.get("name", "")))
        except BackendError as exc:
            logger.info(
                "model_details_unavailable model=%s error=%s",
                model.get("name"),
                exc.cause,
            )
            return model
        return {**model, "details": normalize_model_details(shown.get("details"))}

    async def list_models_with_details(self) -> list[dict[str, Any]]:
        models = await self.list_models()
        enriched = await asyncio.gather(*(self._with_details(m) for m in models))
        return sorted(enriched, key=_model_sort_key)

    async def delete_models(self, names: list[str]) -> list[str]:
        """Delete every model concurrently and return the names that failed.

        Each deletion settles independently; deletions that succeeded are kept
        even when others in the batch fail.
        """
        results = await asyncio.gather(
            *(self.delete_model(name) for name in names),
            return_exceptions=True,
        )
        failed: list[str] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, BackendError):
                    raise result
                failed.append(name)
        return failed
