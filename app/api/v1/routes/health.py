from fastapi import APIRouter, Depends

from app.api.deps import get_desk, raise_for_service_error
from app.domain.entities import Conversation
from app.domain.exceptions import TransientIOError
from app.services.support_desk import SupportDesk

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/storage")
async def storage_health(desk: SupportDesk = Depends(get_desk)) -> dict[str, str]:
    try:
        await desk.storage.query(Conversation, limit=1)
    except TransientIOError as exc:
        raise_for_service_error(exc)
    return {"storage": "ok"}
