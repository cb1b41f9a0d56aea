from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import Field

from app.config.settings import settings
from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ErrorDetail(BaseModel):
    """One rejected input field"""

    field: str = Field(..., description="Dotted location of the field, e.g. body -> hoursThreshold")
    message: str
    type: str = Field(..., description="Pydantic error type")


class ApiResponse(BaseModel):
    """Envelope around every API payload.

    Errors carry ``meta.error_code`` (stable, machine readable) and
    ``meta.retryable`` when repeating the same request may succeed.
    """

    success: bool
    status: ResponseStatus
    message: str
    data: Optional[Any] = None
    meta: Optional[Dict[str, Any]] = None
    errors: Optional[List[ErrorDetail]] = None
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    path: Optional[str] = None
    version: str = Field(default=settings.VERSION, description="Service version")
