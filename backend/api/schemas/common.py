"""Query models shared by list endpoints."""

from typing import Optional

from pydantic import BaseModel, Field

from core.utils import calculate_offset


class PaginationParams(BaseModel):
    """Page-based paging for list endpoints."""

    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    per_page: int = Field(default=20, ge=1, le=100, description="Items per page (max 100)")

    @property
    def offset(self) -> int:
        return calculate_offset(self.page, self.per_page)


class ExecutionFilterParams(BaseModel):
    """Narrow an execution listing to one status or one contact."""

    status: Optional[str] = Field(default=None, description="Only executions in this status")
    contact_id: Optional[str] = Field(default=None, description="Only executions of this contact")

    def as_filters(self) -> dict:
        return {key: value for key, value in self.model_dump().items() if value is not None}
