from typing import Any, Dict, List, Optional
from fastapi import status, Request
from fastapi.responses import JSONResponse
from app.schemas.response_schemas import ApiResponse, PaginationMeta, ResponseStatus


class ResponseBuilder:
    """Builds `ApiResponse` envelopes"""

    @staticmethod
    def success(
        request: Request,
        data: Any = None,
        message: str = "Request successful",
        meta: Optional[Dict[str, Any]] = None,
        pagination: Optional[PaginationMeta] = None,
        status_code: int = status.HTTP_200_OK,
    ) -> JSONResponse:
        return _render(
            request,
            status_code,
            success=True,
            status=ResponseStatus.SUCCESS,
            message=message,
            data=data,
            meta=meta,
            pagination=pagination,
        )

    @staticmethod
    def paginated(
        request: Request,
        data: Any,
        limit: int,
        offset: int,
        total: int,
        returned: int,
        message: str = "Data retrieved successfully",
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        """Success envelope for an offset page; `returned` is the size of this page."""
        return ResponseBuilder.success(
            request=request,
            data=data,
            message=message,
            meta=meta,
            pagination=PaginationMeta(
                limit=limit,
                offset=offset,
                total=total,
                has_more=offset + returned < total,
            ),
        )

    @staticmethod
    def error(
        request: Request,
        message: str = "An error occurred",
        errors: Optional[List[Dict[str, Any]]] = None,
        error_code: Optional[str] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        data: Any = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        response_meta = dict(meta or {})
        if error_code:
            response_meta["error_code"] = error_code

        return _render(
            request,
            status_code,
            success=False,
            status=ResponseStatus.ERROR,
            message=message,
            data=data,
            meta=response_meta or None,
            errors=errors,
        )


def _render(request: Request, status_code: int, **fields) -> JSONResponse:
    response = ApiResponse(
        request_id=getattr(request.state, "request_id", None),
        path=str(request.url.path),
        **fields,
    )
    return JSONResponse(
        status_code=status_code, content=response.model_dump(exclude_none=True)
    )
