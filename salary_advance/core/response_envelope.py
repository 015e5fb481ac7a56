"""Success envelope for JSON API responses.

Route handlers return plain models; this middleware rewrites any 2xx JSON
body into ``{code, message, data, details}`` so clients parse one shape for
success and failure alike. Error bodies are already enveloped by
:mod:`salary_advance.core.errors`.
"""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

SUCCESS_CODES = {200: "ok", 201: "created", 202: "accepted"}
# Recomputed by the replacement response
_DROPPED_HEADERS = frozenset({"content-length", "content-type"})


def success_envelope(data: Any, status_code: int = 200) -> dict[str, Any]:
    return {
        "code": SUCCESS_CODES.get(status_code, "ok"),
        "message": HTTPStatus(status_code).phrase,
        "data": data,
        "details": {},
    }


def _already_enveloped(payload: Any) -> bool:
    return isinstance(payload, dict) and {"code", "message"} <= payload.keys() and bool(
        payload.keys() & {"data", "details"}
    )


async def _read_body(response: Response) -> bytes:
    chunks = [chunk if isinstance(chunk, bytes) else chunk.encode("utf-8") async for chunk in response.body_iterator]
    return b"".join(chunks)


class ResponseEnvelopeMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, exclude_prefixes: tuple[str, ...] = ()) -> None:
        super().__init__(app)
        self.exclude_prefixes = exclude_prefixes

    def _skips(self, path: str, response: Response) -> bool:
        if path.startswith(self.exclude_prefixes) or not 200 <= response.status_code < 300:
            return True
        if response.status_code == 204:
            return False
        return response.headers.get("content-type", "").split(";")[0] != "application/json"

    async def dispatch(self, request, call_next) -> Response:
        response = await call_next(request)
        if self._skips(request.url.path, response):
            return response

        status_code = response.status_code
        if status_code == 204:
            status_code, payload = 200, None
        else:
            body = await _read_body(response)
            try:
                payload = json.loads(body) if body else None
            except ValueError:
                return self._rebuild(
                    response, Response(content=body, status_code=status_code, media_type="application/json")
                )

        if _already_enveloped(payload):
            content = {"data": None, "details": {}, **payload}
        else:
            content = success_envelope(payload, status_code)
        return self._rebuild(response, JSONResponse(status_code=status_code, content=content))

    @staticmethod
    def _rebuild(original: Response, replacement: Response) -> Response:
        for key, value in original.headers.items():
            if key.lower() not in _DROPPED_HEADERS:
                replacement.headers[key] = value
        return replacement


def register_response_envelope(app, *, exclude_prefixes: tuple[str, ...] = ()) -> None:
    app.add_middleware(ResponseEnvelopeMiddleware, exclude_prefixes=exclude_prefixes)
