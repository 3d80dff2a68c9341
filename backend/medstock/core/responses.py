"""MedStock — API response helpers."""
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from medstock.core.errors import MedStockError, ValidationError


def success_response(data: Any, meta: dict | None = None) -> dict:
    return {"data": data, "error": None, "meta": meta}


def error_response(code: str, message: str, field_errors: list[dict] | None = None, meta: dict | None = None) -> dict:
    return {
        "data": None,
        "error": {
            "code": code,
            "message": message,
            "field_errors": field_errors or []
        },
        "meta": meta
    }


async def medstock_error_handler(request: Request, exc: MedStockError) -> JSONResponse:
    """Render any domain error in the standard envelope."""
    field_errors = exc.field_errors if isinstance(exc, ValidationError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message, field_errors, meta=exc.meta or None),
    )
