"""
Pydantic schemas for audit trail responses.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from app.features.audit.models import AuditAction


class AuditEntryResponse(BaseModel):
    """Schema for audit entry response."""
    id: str
    user_id: str
    permission_id: str
    grant_id: Optional[str]
    action: AuditAction
    actor_id: Optional[str]
    reason: Optional[str]
    timestamp: datetime
    expires_at: Optional[datetime]
    details: Optional[Dict[str, Any]]

    model_config = ConfigDict(from_attributes=True)


class AuditEntryListResponse(BaseModel):
    """Schema for paginated audit entry list."""
    items: List[AuditEntryResponse]
    total: int
    page: int
    page_size: int
    pages: int
