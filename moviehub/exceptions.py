"""
Route-level errors and the JSON error envelope shared by every handler
"""

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse


class ValidationError(HTTPException):
    """Request parameter rejected before reaching the catalog"""

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail
        )


class UnauthorizedError(HTTPException):
    """Caller did not identify a user"""

    def __init__(self, detail: str = "Missing user id"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def error_response(status_code: int, message: str) -> JSONResponse:
    """{"success": false, "error": {...}} body used for all failures"""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"message": message, "status_code": status_code},
        },
    )
