from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, List
import uuid

from pydantic import Field

from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class ResponseStatus(str, Enum):
    """Response status enumeration"""

    SUCCESS = "success"
    ERROR = "error"


class PaginationMeta(BaseModel):
    """Offset pagination, as used by notification listings"""

    limit: int = Field(..., description="Maximum items per page")
    offset: int = Field(..., description="Number of items skipped")
    total: int = Field(..., description="Total number of matching items")
    has_more: bool = Field(..., description="Whether items remain past this page")


class ApiResponse(BaseModel):
    """Envelope shared by every endpoint, success or error"""

    success: bool = Field(..., description="Whether the request was successful")
    status: ResponseStatus = Field(..., description="Response status")
    message: str = Field(..., description="Human-readable message")
    data: Optional[Any] = Field(default=None, description="Response data")
    meta: Optional[Dict[str, Any]] = Field(
        default=None, description="Additional metadata, e.g. error_code"
    )
    pagination: Optional[PaginationMeta] = Field(
        default=None, description="Pagination information"
    )
    errors: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Field-level error details"
    )
    timestamp: str = Field(
        default_factory=lambda: datetime.now().isoformat(),
        description="Response timestamp",
    )
    # Missing only for errors raised before RequestIDMiddleware ran
    request_id: Optional[str] = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Request or job-run identifier",
    )
    path: Optional[str] = Field(default=None, description="Request path")
    version: str = Field(default="1.0", description="API version")
