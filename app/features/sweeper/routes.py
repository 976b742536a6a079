"""
On-demand expiration sweep.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.engine import get_session_factory
from app.core.notifications import Notifier
from app.features.audit.schemas import AuditEntryResponse
from app.features.grants.dependencies import get_notifier, require_permission
from app.features.sweeper.sweeper import ExpirationSweeper
from app.features.users.models import User


router = APIRouter()


class SweepResponse(BaseModel):
    swept: int
    entries: List[AuditEntryResponse]


def get_sweeper(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    notifier: Annotated[Notifier, Depends(get_notifier)],
) -> ExpirationSweeper:
    return ExpirationSweeper(session_factory, notifier=notifier)


@router.post("/run", response_model=SweepResponse)
async def run_sweep(
    sweeper: Annotated[ExpirationSweeper, Depends(get_sweeper)],
    current_user: Annotated[User, Depends(require_permission("permission.manage"))],
):
    """Expire every grant past its expiry now, instead of waiting for the next scheduled run."""
    entries = await sweeper.sweep_expired()
    return SweepResponse(
        swept=len(entries),
        entries=[AuditEntryResponse.model_validate(entry) for entry in entries],
    )
