from __future__ import annotations

import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse


class Authenticator:
    """Checks the caller credential against the configured ``APIKEY``.

    Clients may send the key as ``Authorization: Bearer <key>`` or as
    ``x-api-key: <key>``. Without a configured key every request passes.
    """

    def __init__(self, api_key: str | None):
        self.api_key = api_key
        self.required = bool(api_key)

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        presented = _presented_key(request)
        if not presented:
            return _unauthorized("Missing API key.")
        if not secrets.compare_digest(presented.encode(), str(self.api_key).encode()):
            return _unauthorized("Invalid API key.")

        return None


def _presented_key(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.headers.get("x-api-key", "").strip()


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "type": "authentication_error",
                "message": message,
            },
        },
    )
