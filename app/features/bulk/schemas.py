"""
Pydantic schemas for bulk operations.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator


MAX_BULK_PAIRS = 1000


class BulkGrantRequest(BaseModel):
    """Schema for granting several permissions to several users."""
    user_ids: List[str] = Field(..., min_length=1, max_length=100)
    permission_codes: List[str] = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)
    expires_at: Optional[datetime] = None

    @model_validator(mode='after')
    def bounded(self) -> "BulkGrantRequest":
        if len(self.user_ids) * len(self.permission_codes) > MAX_BULK_PAIRS:
            raise ValueError(f'At most {MAX_BULK_PAIRS} user/permission pairs per request')
        return self


class BulkRevokeRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=100)
    permission_codes: List[str] = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def bounded(self) -> "BulkRevokeRequest":
        if len(self.user_ids) * len(self.permission_codes) > MAX_BULK_PAIRS:
            raise ValueError(f'At most {MAX_BULK_PAIRS} user/permission pairs per request')
        return self


class CloneGrantsRequest(BaseModel):
    """Copy one user's direct grants to another."""
    source_user_id: str
    target_user_id: str
    reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def distinct_users(self) -> "CloneGrantsRequest":
        if self.source_user_id == self.target_user_id:
            raise ValueError('source_user_id and target_user_id must differ')
        return self


class BulkResultResponse(BaseModel):
    user_id: str
    permission_code: str
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    grant_id: Optional[str] = None
    pending: bool = False

    model_config = ConfigDict(from_attributes=True)


class BulkResponse(BaseModel):
    """Per-pair results in request order plus totals."""
    results: List[BulkResultResponse]
    succeeded: int
    failed: int
