from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from ccrouter import __version__
from ccrouter.auth import Authenticator
from ccrouter.config import ConfigStore, RouteClass, RouterConfig, export_environment
from ccrouter.credentials import CredentialCache, build_token_acquirer
from ccrouter.errors import (
    ConfigValidationError,
    CredentialAcquisitionError,
    RouterError,
    UnknownModelError,
    UnknownProviderError,
)
from ccrouter.proxy import BackendProxy
from ccrouter.rewriter import RequestRewriter
from ccrouter.router_engine import IncomingRequest, ModelRouter
from ccrouter.settings import get_settings

app = FastAPI(
    title="ccrouter",
    description="Local proxy that routes messages requests across model providers.",
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")

_ERROR_STATUS: dict[type[RouterError], int] = {
    UnknownProviderError: status.HTTP_400_BAD_REQUEST,
    UnknownModelError: status.HTTP_400_BAD_REQUEST,
    CredentialAcquisitionError: status.HTTP_502_BAD_GATEWAY,
}


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    store = ConfigStore(settings.config_path)
    try:
        router_config = store.load()
    except RouterError as exc:
        logger.error("startup_failed config_path=%s error=%s", store.path, exc)
        raise
    export_environment(router_config)

    credentials = CredentialCache(
        build_token_acquirer(settings.credential_source),
        timeout_seconds=max(0.1, settings.credential_timeout_seconds),
    )
    app.state.settings = settings
    app.state.router_config = router_config
    app.state.authenticator = Authenticator(router_config.api_key)
    app.state.model_router = ModelRouter()
    app.state.credentials = credentials
    app.state.rewriter = RequestRewriter(
        credentials,
        default_scope=settings.azure_scope,
        default_api_version=settings.azure_api_version,
    )
    app.state.backend_proxy = BackendProxy(
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    logger.info(
        "startup complete config_path=%s providers=%d models=%d default_route=%s "
        "ingress_auth=%s credential_source=%s",
        store.path,
        len(router_config.providers),
        len(router_config.available_models()),
        router_config.get_route(RouteClass.DEFAULT),
        app.state.authenticator.required,
        settings.credential_source,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: BackendProxy | None = getattr(app.state, "backend_proxy", None)
    if proxy is not None:
        await proxy.close()
    credentials: CredentialCache | None = getattr(app.state, "credentials", None)
    if credentials is not None:
        await credentials.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    credentials: CredentialCache | None = getattr(app.state, "credentials", None)
    return {
        "status": "ok",
        "credentials": credentials.snapshot() if credentials is not None else {},
    }


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    config: RouterConfig = app.state.router_config
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "owned_by": model_id.split(",", 1)[0]}
            for model_id in config.available_models()
        ],
    }


async def _route_and_forward(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError as exc:
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            f"Expected JSON body: {exc}",
        )
    if not isinstance(payload, dict):
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            "Expected a JSON object request body.",
        )

    try:
        incoming = IncomingRequest.from_payload(payload)
    except ValidationError as exc:
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "invalid_request_error",
            f"Invalid request body: {exc.errors(include_url=False)}",
        )

    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    model_router: ModelRouter = app.state.model_router
    rewriter: RequestRewriter = app.state.rewriter
    proxy: BackendProxy = app.state.backend_proxy

    decision = model_router.select(incoming, app.state.router_config)
    outbound = await rewriter.prepare(decision, incoming)
    logger.info(
        "proxy_start request_id=%s requested_model=%s target=%s route_class=%s "
        "estimated_tokens=%d stream=%s",
        request_id,
        incoming.model,
        decision.label,
        decision.route_class.value,
        incoming.estimated_prompt_tokens,
        incoming.stream,
    )
    return await proxy.forward(
        decision=decision,
        outbound=outbound,
        payload=payload,
        incoming_headers=request.headers,
        stream=incoming.stream,
        request_id=request_id,
    )


@app.post("/v1/messages")
async def messages(request: Request) -> Response:
    return await _route_and_forward(request)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _route_and_forward(request)


@app.exception_handler(RouterError)
async def router_error_handler(_: Request, exc: RouterError) -> JSONResponse:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.warning("request_failed error_type=%s error=%s", exc.error_type, exc)
    else:
        logger.info("request_rejected error_type=%s error=%s", exc.error_type, exc)
    message = str(exc)
    if isinstance(exc, CredentialAcquisitionError):
        message = f"Authentication with provider failed for scope '{exc.scope}'."
    elif isinstance(exc, ConfigValidationError):
        message = "Router is misconfigured."
    return _error_response(status_code, exc.error_type, message)


def _error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("ccrouter.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
