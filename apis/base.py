from typing import Any

from fastapi import HTTPException

from core.errors import ServiceError


def success_response(data: Any = None, message: str = "success", code: int = 0) -> dict:
    return {"code": code, "message": message, "data": data}


def error_response(code: int, message: str, data: Any = None) -> dict:
    return {"code": code, "message": message, "data": data}


def service_http_error(e: ServiceError) -> HTTPException:
    """业务异常 -> HTTPException，保留业务错误码。"""
    return HTTPException(status_code=e.status_code, detail=error_response(code=e.code, message=e.message))
