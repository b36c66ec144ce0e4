from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, AsyncIterator

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ccrouter.rewriter import OutboundAuth
from ccrouter.router_engine import RoutingDecision

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
}

PASSTHROUGH_REQUEST_HEADERS = {
    "accept",
    "anthropic-beta",
    "anthropic-version",
    "content-type",
    "traceparent",
    "tracestate",
    "user-agent",
    "x-request-id",
}

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    request = getattr(exc, "_request", None)
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url.copy_with(query=None))
    return details


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def build_upstream_headers(
    incoming_headers: Mapping[str, str],
    outbound: OutboundAuth,
    stream: bool = False,
) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming_headers.items():
        lower = name.lower()
        if lower in PASSTHROUGH_REQUEST_HEADERS:
            headers[lower] = value

    headers = outbound.apply(headers)
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    if not any(key.lower() == "accept" for key in headers):
        headers["Accept"] = "text/event-stream" if stream else "application/json"
    return headers


class BackendProxy:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        connect_timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else max(0.1, min(5.0, timeout_seconds))
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def forward(
        self,
        *,
        decision: RoutingDecision,
        outbound: OutboundAuth,
        payload: dict[str, Any],
        incoming_headers: Mapping[str, str],
        stream: bool,
        request_id: str,
    ) -> Response:
        body = {**payload, "model": outbound.upstream_model}
        headers = build_upstream_headers(incoming_headers, outbound, stream=stream)
        started = time.perf_counter()
        try:
            request = self.client.build_request(
                method="POST",
                url=outbound.url,
                json=body,
                headers=headers,
            )
            upstream = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            error_details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s target=%s method=%s url=%s "
                "error_type=%s error=%s is_timeout=%s",
                request_id,
                decision.label,
                error_details.get("request_method", "POST"),
                error_details.get("request_url", outbound.url),
                error_details["error_type"],
                error_details["error"],
                error_details["is_timeout"],
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content={
                    "error": {
                        "type": "upstream_connection_error",
                        "message": (
                            "Could not reach provider "
                            f"({error_details['error_type']}): {error_details['error']}"
                        ),
                        "is_timeout": error_details["is_timeout"],
                    }
                },
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_response request_id=%s target=%s route_class=%s status=%d connect_ms=%.2f",
            request_id,
            decision.label,
            decision.route_class.value,
            upstream.status_code,
            latency_ms,
        )
        response_headers = _filter_response_headers(upstream.headers)
        response_headers["x-router-request-id"] = request_id
        response_headers["x-router-provider"] = decision.provider.name
        response_headers["x-router-model"] = decision.model
        response_headers["x-router-route-class"] = decision.route_class.value

        if stream:
            media_type = response_headers.pop("content-type", "text/event-stream")

            async def stream_generator() -> AsyncIterator[bytes]:
                try:
                    async for chunk in upstream.aiter_raw():
                        yield chunk
                finally:
                    await upstream.aclose()

            return StreamingResponse(
                content=stream_generator(),
                status_code=upstream.status_code,
                headers=response_headers,
                media_type=media_type,
            )

        body_bytes = await upstream.aread()
        await upstream.aclose()
        # aread() returns decoded bytes.
        response_headers.pop("content-encoding", None)
        return Response(
            content=body_bytes,
            status_code=upstream.status_code,
            headers=response_headers,
        )
