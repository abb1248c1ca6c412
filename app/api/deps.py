from typing import NoReturn

from fastapi import Header, HTTPException, Request, status

from app.domain.exceptions import (
    CapacityExceeded,
    ClosedConversationError,
    ConversationAccessDenied,
    DeskError,
    InvalidConversationTransition,
    NotFound,
    SlotConflict,
    StaleCallSignal,
    TransientIOError,
)
from app.services.support_desk import SupportDesk

SERVICE_ERRORS = (DeskError, ValueError)


def get_desk(request: Request) -> SupportDesk:
    desk = getattr(request.app.state, "desk", None)
    if desk is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Support desk is not initialized",
        )
    return desk


async def get_visitor_session_id(
    x_visitor_session_id: str = Header(
        alias="X-Visitor-Session-Id",
        min_length=8,
        max_length=120,
    ),
) -> str:
    return x_visitor_session_id.strip()


async def get_agent_id(
    x_agent_id: str = Header(alias="X-Agent-Id", min_length=1, max_length=120),
) -> str:
    return x_agent_id.strip()


def raise_for_service_error(exc: Exception, desk: SupportDesk | None = None) -> NoReturn:
    if isinstance(exc, ConversationAccessDenied):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)
        ) from exc
    if isinstance(exc, NotFound):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
    if isinstance(exc, SlotConflict):
        available = desk.list_slots() if desk is not None else []
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "available_slots": [slot.isoformat() for slot in available],
            },
        ) from exc
    if isinstance(
        exc,
        (
            ClosedConversationError,
            InvalidConversationTransition,
            CapacityExceeded,
            StaleCallSignal,
        ),
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=str(exc)
        ) from exc
    if isinstance(exc, TransientIOError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage is temporarily unavailable",
        ) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc
    raise exc
