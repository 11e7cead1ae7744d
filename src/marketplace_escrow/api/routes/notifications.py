"""In-app notification REST API routes.

Routes:
    GET    /api/v1/notifications?user_id=   A user's notifications, newest first
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: TC002

from marketplace_escrow.api.deps import get_db_session
from marketplace_escrow.infrastructure.database.repositories import NotificationRepository
from marketplace_escrow.schemas.payments import NotificationResponse

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


@router.get(
    "",
    response_model=list[NotificationResponse],
    summary="List a user's notifications",
)
async def list_notifications(
    user_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> list[NotificationResponse]:
    notifications = await NotificationRepository(session).get_by_user(user_id)
    return [NotificationResponse.model_validate(n) for n in notifications]
