from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class AppError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 400, details: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details


def error_body(code: str, message: str, details: Any = None) -> dict:
    err: dict = {"code": code, "message": message}
    if details:
        err["details"] = details
    return {"error": err}


def invalid_phone_format() -> AppError:
    return AppError("invalid_phone_format", "Invalid phone number format", 400)


def invalid_otp() -> AppError:
    return AppError("invalid_otp", "Invalid or expired code", 401)


def invalid_token() -> AppError:
    return AppError("invalid_token", "Not authenticated", 401)


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message, exc.details))


async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict) and "code" in detail:
        body = error_body(detail["code"], detail.get("message") or "Request failed")
    else:
        body = error_body("http_error", str(detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # field names only; submitted values never echo back
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content=error_body("invalid_request", "Invalid request", {"fields": [f for f in fields if f]}),
    )
