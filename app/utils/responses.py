from typing import Any, Dict, List, Optional
import uuid

from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.schemas.response_schemas import ApiResponse, ErrorDetail, ResponseStatus


def _envelope(request: Request, status_code: int, **fields) -> JSONResponse:
    # Requests rejected before RequestIDMiddleware ran have no id yet
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    response = ApiResponse(
        path=str(request.url.path), request_id=request_id, **fields
    )
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(exclude_none=True, by_alias=True),
    )


class ResponseBuilder:
    """Builds the standard ``ApiResponse`` envelope"""

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "Request successful",
        meta: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        return _envelope(
            request,
            status_code,
            success=True,
            status=ResponseStatus.SUCCESS,
            message=message,
            data=data,
            meta=meta,
        )

    @staticmethod
    def error(
        request: Request,
        message: str = "An error occurred",
        error_code: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        error_type: Optional[str] = None,
        retryable: bool = False,
        errors: Optional[List[ErrorDetail]] = None,
        data: Any = None,
    ) -> JSONResponse:
        """Error envelope; ``error_code``, ``error_type`` and ``retryable`` go to meta"""
        meta: Dict[str, Any] = {}
        if error_code:
            meta["error_code"] = error_code
        if error_type:
            meta["error_type"] = error_type
        if retryable:
            meta["retryable"] = True

        return _envelope(
            request,
            status_code,
            success=False,
            status=ResponseStatus.ERROR,
            message=message,
            data=data,
            meta=meta or None,
            errors=errors,
        )
