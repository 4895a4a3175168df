from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from endpoint_monitoring.models import HTTP_METHODS


class ApiError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ApiError


class SendRequestBody(BaseModel):
    method: str = Field("GET", min_length=1, max_length=10)
    url: str = Field(..., min_length=1, max_length=2000)
    headers: dict[str, str] | None = None
    body: str | None = None

    def normalized_method(self) -> str | None:
        m = self.method.strip().upper()
        return m if m in HTTP_METHODS else None
