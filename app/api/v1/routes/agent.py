from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import SERVICE_ERRORS, get_agent_id, get_desk, raise_for_service_error
from app.api.presenters import (
    to_conversation_response,
    to_message_list,
    to_message_response,
)
from app.domain.enums import SenderKind
from app.schemas.agent import (
    AgentPresenceResponse,
    ClaimNextRequest,
    ClaimNextResponse,
    HeartbeatResponse,
    PresenceOverviewResponse,
)
from app.schemas.common import Page
from app.schemas.conversation import CloseConversationRequest, ConversationResponse
from app.schemas.message import MessageListResponse, MessageResponse, SendMessageRequest
from app.services.support_desk import SupportDesk

router = APIRouter()


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> HeartbeatResponse:
    try:
        came_online = await desk.heartbeat(agent_id)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return HeartbeatResponse(
        agent_id=agent_id,
        online=True,
        came_online=came_online,
        active_conversations=sorted(desk.queue.active_for(agent_id)),
    )


@router.post("/offline", status_code=status.HTTP_204_NO_CONTENT)
async def go_offline(
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> Response:
    try:
        await desk.agent_offline(agent_id)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/presence", response_model=PresenceOverviewResponse)
async def presence_overview(
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> PresenceOverviewResponse:
    _ = agent_id
    return PresenceOverviewResponse(
        online_agents=desk.presence.online_agents(),
        online_count=desk.presence.online_count(),
        pending=desk.queue.pending_count(),
    )


@router.get("/presence/{other_agent_id}", response_model=AgentPresenceResponse | None)
async def agent_presence(
    other_agent_id: str,
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> AgentPresenceResponse | None:
    _ = agent_id
    presence = desk.presence.get(other_agent_id)
    if presence is None:
        return None
    return AgentPresenceResponse(
        agent_id=presence.agent_id,
        online=presence.online,
        last_heartbeat_at=presence.last_heartbeat_at,
    )


@router.post("/conversations/next", response_model=ClaimNextResponse)
async def claim_next(
    payload: ClaimNextRequest | None = None,
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> ClaimNextResponse:
    agent_name = payload.agent_name if payload is not None else None
    try:
        result = await desk.claim_next(agent_id, agent_name)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    if result is None:
        return ClaimNextResponse(
            conversation=None, message=None, pending=desk.queue.pending_count()
        )
    return ClaimNextResponse(
        conversation=to_conversation_response(result.conversation),
        message=to_message_response(result.message),
        pending=desk.queue.pending_count(),
    )


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: int,
    payload: SendMessageRequest,
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> MessageResponse:
    try:
        message = await desk.post_message(
            conversation_id, SenderKind.AGENT, agent_id, payload.body
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_message_response(message)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=Page[MessageResponse],
)
async def get_messages_page(
    conversation_id: int,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> Page[MessageResponse]:
    try:
        result = await desk.message_page(
            conversation_id, SenderKind.AGENT, agent_id, page, limit
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return Page[MessageResponse](
        data=[to_message_response(message) for message in result.data],
        current_page=result.current_page,
        last_page=result.last_page,
    )


@router.get(
    "/conversations/{conversation_id}/messages/history",
    response_model=MessageListResponse,
)
async def get_message_history(
    conversation_id: int,
    before: int | None = Query(default=None, ge=1),
    limit: int | None = Query(default=None, ge=1),
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> MessageListResponse:
    try:
        messages = await desk.list_messages(
            conversation_id, SenderKind.AGENT, agent_id, before, limit
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_message_list(messages, desk.page_limit(limit))


@router.post("/conversations/{conversation_id}/close", response_model=ConversationResponse)
async def close_conversation(
    conversation_id: int,
    payload: CloseConversationRequest | None = None,
    desk: SupportDesk = Depends(get_desk),
    agent_id: str = Depends(get_agent_id),
) -> ConversationResponse:
    closed_by = payload.closed_by if payload is not None else None
    try:
        conversation = await desk.close_conversation(
            conversation_id, SenderKind.AGENT, agent_id, closed_by or f"Agent {agent_id}"
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_conversation_response(conversation)
