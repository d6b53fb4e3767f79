"""
Translate usage-metering exceptions into HTTP responses
"""

from fastapi.responses import JSONResponse

from turbomerch.services.exceptions import UsageMeteringError


def error_response(error: UsageMeteringError) -> JSONResponse:
    """JSON body and status code for a domain error"""
    return JSONResponse(status_code=error.status_code, content=error.to_response_dict())
