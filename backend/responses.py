import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.errors import AppError

logger = logging.getLogger(__name__)


def success_response(
    data: Any = None,
    status_code: int = 200,
    meta: Optional[dict] = None,
) -> JSONResponse:
    payload = {"success": True, "data": data}
    if meta is not None:
        payload["meta"] = meta
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    details: Any = None,
) -> JSONResponse:
    error = {"message": message}
    if code:
        error["code"] = code
    if details is not None:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "error": error}),
    )


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, exc.code, exc.details)


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    first = details[0] if details else {"field": "", "message": "Invalid request"}
    message = (
        f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    )
    return error_response(400, message, "VALIDATION_ERROR", details)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error", "INTERNAL_ERROR", str(exc))


def register_exception_handlers(app: FastAPI):
    """Render every failure as the {success: false, error: {...}} envelope."""
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
