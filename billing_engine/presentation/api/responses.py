from fastapi import status
from fastapi.responses import JSONResponse

from ...domain.exceptions import BillingError


def error_response(exc: BillingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


def internal_error_response(message: str = "Internal server error") -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": message},
    )
