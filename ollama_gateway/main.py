from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles

from ollama_gateway.endpoints import EndpointRegistry
from ollama_gateway.gateway.active_target import ActiveTargetStore
from ollama_gateway.gateway.auth import Authenticator
from ollama_gateway.gateway.backend_client import BackendClient, BackendError
from ollama_gateway.gateway.stream_relay import RelayOperation, StreamRelay
from ollama_gateway.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

UNAUTHENTICATED_PATHS = {"/health"}
PUBLIC_MOUNT_NAME = "public"


def cors_options(settings: Settings) -> dict[str, Any]:
    return {
        "allow_origins": settings.cors_allow_origins_list,
        "allow_methods": ["GET", "POST", "DELETE", "OPTIONS"],
        "allow_headers": ["Authorization", "Content-Type"],
    }


def mount_public_dir(app_obj: FastAPI, public_dir: str | Path) -> bool:
    """Serve ``public_dir`` at ``/``; must run after every API route is declared."""
    directory = Path(public_dir)
    if not directory.is_dir():
        logger.info("public_dir_missing path=%s", directory)
        return False
    app_obj.mount(
        "/",
        StaticFiles(directory=directory, html=True),
        name=PUBLIC_MOUNT_NAME,
    )
    return True


app = FastAPI(
    title="Ollama Endpoint Gateway",
    description="Credential-gated gateway for one or more Ollama endpoints.",
    version="0.1.0",
)
app.add_middleware(CORSMiddleware, **cors_options(get_settings()))


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.url.path in UNAUTHENTICATED_PATHS or request.method == "OPTIONS":
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def _failure(message: str, error: str | None = None, status_code: int = 500) -> JSONResponse:
    content: dict[str, Any] = {"success": False, "message": message}
    if error is not None:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    registry = EndpointRegistry.from_string(settings.ollama_endpoints)
    target_store = ActiveTargetStore()
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.endpoint_registry = registry
    app.state.target_store = target_store
    app.state.backend_client = BackendClient(
        registry,
        target_store,
        timeout_seconds=settings.backend_timeout_seconds,
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
        null_bearer_compat=settings.null_bearer_compat,
    )
    logger.info(
        "startup complete endpoints=%d active_target=%s basic_auth=%s null_bearer_compat=%s",
        len(registry),
        target_store.get(),
        settings.basic_auth_enabled,
        settings.null_bearer_compat,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    backend_client: BackendClient | None = getattr(app.state, "backend_client", None)
    if backend_client is not None:
        await backend_client.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/swagger.json")
async def swagger() -> Response:
    settings: Settings = app.state.settings
    swagger_path = Path(settings.public_dir) / "swagger.json"
    try:
        content = swagger_path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("swagger_load_failed path=%s error=%s", swagger_path, exc)
        return JSONResponse(
            status_code=500, content={"error": "Failed to load swagger.json"}
        )
    return Response(content=content, media_type="application/json")


@app.get("/api/endpoints")
async def list_endpoints() -> list[str]:
    registry: EndpointRegistry = app.state.endpoint_registry
    return registry.urls_only()


@app.post("/api/set-endpoint")
async def set_endpoint(request: Request) -> Response:
    payload = await _read_json_object(request)
    endpoint = payload.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.strip():
        return _failure("Endpoint is required", status_code=400)

    endpoint = endpoint.strip()
    target_store: ActiveTargetStore = app.state.target_store
    backend_client: BackendClient = app.state.backend_client
    target_store.set(endpoint)
    logger.info("active_target_set endpoint=%s", endpoint)
    try:
        await backend_client.probe(endpoint)
    except BackendError as exc:
        return _failure("Failed to connect to Ollama endpoint", exc.cause)
    return JSONResponse(
        content={"success": True, "message": "Endpoint set successfully"}
    )


@app.get("/api/ps")
async def running_models() -> Response:
    backend_client: BackendClient = app.state.backend_client
    try:
        body = await backend_client.running_models()
    except BackendError as exc:
        return _failure("Failed to fetch running models", exc.cause)
    return JSONResponse(content=body)


@app.get("/api/models")
async def list_models() -> Response:
    backend_client: BackendClient = app.state.backend_client
    try:
        models = await backend_client.list_models_with_details()
    except BackendError as exc:
        return _failure("Failed to fetch models", exc.cause)
    return JSONResponse(content=models)


@app.delete("/api/models")
async def delete_models(request: Request) -> Response:
    payload = await _read_json_object(request)
    names = payload.get("models")
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        return _failure("A list of model names is required", status_code=400)

    backend_client: BackendClient = app.state.backend_client
    failed = await backend_client.delete_models(names)
    if failed:
        logger.warning(
            "model_delete_partial_failure requested=%d failed=%s",
            len(names),
            ",".join(failed),
        )
        return _failure(f"Failed to delete models: {', '.join(failed)}")
    return JSONResponse(
        content={"success": True, "message": "Models deleted successfully"}
    )


def _relay_response(request: Request, operation: RelayOperation) -> StreamingResponse:
    settings: Settings = app.state.settings
    relay = StreamRelay(
        app.state.backend_client,
        operation,
        reassemble_partial_lines=settings.relay_reassemble_partial_lines,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(relay.stream(), media_type="application/json")


@app.post("/api/pull")
async def pull_model(request: Request) -> Response:
    payload = await _read_json_object(request)
    model = payload.get("model")
    if not model:
        return _failure("Model name is required", status_code=400)
    return _relay_response(request, RelayOperation(payload={"model": model}))


@app.post("/api/update-model")
async def update_model(request: Request) -> Response:
    payload = await _read_json_object(request)
    model_name = payload.get("modelName")
    if not model_name:
        return _failure("Model name is required", status_code=400)
    return _relay_response(request, RelayOperation(payload={"model": model_name}))


mount_public_dir(app, get_settings().public_dir)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ollama_gateway.main:app", host=settings.host, port=settings.port, reload=False
    )


if __name__ == "__main__":
    run()
