"""
api/errors.py -- AuthError to HTTP response mapping.

Shared by the global exception handler in api/main.py and by the few route
handlers that must attach extra headers or cookie deletions to an error
response (e.g. a failed refresh clears both auth cookies).
"""

from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthError, ErrorCode


def auth_error_response(exc: AuthError) -> JSONResponse:
    """Render an AuthError as the standard error envelope.

    Whitelisted extras (remaining_seconds, retry_after) go into detail so the
    client can act on them; RATE_LIMITED also sets Retry-After.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code.value,
                message=exc.message,
                detail=dict(exc.extra) if exc.extra else None,
            )
        ).model_dump(),
    )
    if exc.code == ErrorCode.RATE_LIMITED and "retry_after" in exc.extra:
        response.headers["Retry-After"] = str(exc.extra["retry_after"])
    response.headers["Cache-Control"] = "no-store"
    return response
