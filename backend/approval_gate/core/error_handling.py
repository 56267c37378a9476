"""Request-id middleware and exception handlers producing uniform error bodies."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from time import perf_counter
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from approval_gate.core.config import settings
from approval_gate.core.errors import ApprovalError
from approval_gate.core.logging import get_logger

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
_HEALTH_PATHS = frozenset({"/health", "/healthz", "/readyz"})


class RequestIdMiddleware:
    """Assign a request id, echo it on the response, and log request timing."""

    def __init__(self, app: ASGIApp, *, header_name: str = REQUEST_ID_HEADER) -> None:
        self._app = app
        self._header_name = header_name
        self._header_key = header_name.lower().encode("latin-1")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        request_id = self._get_or_create_request_id(scope)
        path = str(scope.get("path", ""))
        method = str(scope.get("method", ""))
        started = perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = int(message.get("status", status_code))
                headers: list[tuple[bytes, bytes]] = list(message.get("headers", []))
                if not any(key.lower() == self._header_key for key, _ in headers):
                    headers.append((self._header_key, request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        try:
            await self._app(scope, receive, send_with_request_id)
        finally:
            self._log_request(
                method=method,
                path=path,
                status_code=status_code,
                request_id=request_id,
                duration_ms=(perf_counter() - started) * 1000,
            )

    def _get_or_create_request_id(self, scope: Scope) -> str:
        request_id: str | None = None
        for key, value in scope.get("headers", []):
            if key.lower() == self._header_key:
                candidate = value.decode("latin-1").strip()
                if candidate:
                    request_id = candidate
                break
        if request_id is None:
            request_id = uuid4().hex
        scope.setdefault("state", {})["request_id"] = request_id
        return request_id

    @staticmethod
    def _log_request(
        *,
        method: str,
        path: str,
        status_code: int,
        request_id: str,
        duration_ms: float,
    ) -> None:
        if path in _HEALTH_PATHS and not settings.request_log_include_health:
            return
        extra = {
            "method": method,
            "path": path,
            "status_code": status_code,
            "request_id": request_id,
            "duration_ms": round(duration_ms, 2),
        }
        logger.debug("http.request.complete", extra=extra)
        threshold = settings.request_log_slow_ms
        if threshold and duration_ms >= threshold:
            logger.warning(
                "http.request.slow",
                extra={**extra, "slow_threshold_ms": threshold},
            )


def install_error_handling(app: FastAPI) -> None:
    """Register the request-id middleware and all exception handlers on `app`."""
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(ApprovalError, _approval_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_exception_handler)
    app.add_exception_handler(ResponseValidationError, _response_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)


def _get_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return None


def _error_payload(
    *,
    detail: Any,
    request_id: str | None,
    code: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"detail": detail}
    if code is not None:
        payload["code"] = code
    if request_id is not None:
        payload["request_id"] = request_id
    return payload


def _json_safe(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, str):
        return [_json_safe(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _error_response(
    request: Request,
    *,
    status_code: int,
    detail: Any,
    code: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    request_id = _get_request_id(request)
    response_headers = dict(headers or {})
    if request_id is not None:
        response_headers[REQUEST_ID_HEADER] = request_id
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            _error_payload(detail=detail, request_id=request_id, code=code),
        ),
        headers=response_headers,
    )


async def _approval_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, ApprovalError):
        raise TypeError("Expected ApprovalError")
    logger.info(
        "http.request.domain_error",
        extra={
            "path": request.url.path,
            "code": exc.code,
            "status_code": exc.status_code,
            "request_id": _get_request_id(request),
        },
    )
    return _error_response(
        request,
        status_code=exc.status_code,
        detail=exc.detail,
        code=exc.code,
    )


async def _request_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, RequestValidationError):
        raise TypeError("Expected RequestValidationError")
    return _error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=_json_safe(exc.errors()),
        code="request_validation_error",
    )


async def _response_validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, ResponseValidationError):
        raise TypeError("Expected ResponseValidationError")
    logger.error(
        "http.response.validation_failed",
        extra={
            "path": request.url.path,
            "request_id": _get_request_id(request),
            "errors": _json_safe(exc.errors()),
        },
    )
    return _error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )


async def _http_exception_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    if not isinstance(exc, StarletteHTTPException):
        raise TypeError("Expected StarletteHTTPException")
    return _error_response(
        request,
        status_code=exc.status_code,
        detail=_json_safe(exc.detail),
        headers=exc.headers,
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "http.request.unhandled_error",
        extra={"path": request.url.path, "request_id": _get_request_id(request)},
        exc_info=exc,
    )
    return _error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal Server Error",
    )
