from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from fastapi.responses import PlainTextResponse

from app.api.deps import (
    SERVICE_ERRORS,
    get_desk,
    get_visitor_session_id,
    raise_for_service_error,
)
from app.api.presenters import (
    to_call_response,
    to_conversation_response,
    to_message_list,
    to_message_response,
)
from app.domain.enums import SenderKind
from app.schemas.common import Page
from app.schemas.conversation import (
    CloseConversationRequest,
    ConversationOverviewResponse,
    ConversationResponse,
    ConversationStartResponse,
    QueuePositionResponse,
    StartConversationRequest,
)
from app.schemas.message import MessageListResponse, MessageResponse, SendMessageRequest
from app.schemas.slot import (
    ReserveSlotRequest,
    SlotListResponse,
    SlotReleaseResponse,
    SlotReservationResponse,
)
from app.services.support_desk import SupportDesk

router = APIRouter()


@router.post(
    "/conversations",
    response_model=ConversationStartResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_conversation(
    payload: StartConversationRequest,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> ConversationStartResponse:
    try:
        result = await desk.start_conversation(
            session_id,
            payload.message,
            display_name=payload.display_name,
            locale=payload.locale,
            slot_time=payload.slot_time,
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return ConversationStartResponse(
        conversation=to_conversation_response(result.conversation),
        messages=[to_message_response(message) for message in result.messages],
        position=result.position,
        online_agents=result.online_agents,
        available_slots=result.available_slots,
        slot_rejected_reason=result.slot_rejected_reason,
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationOverviewResponse)
async def get_overview(
    conversation_id: int,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> ConversationOverviewResponse:
    try:
        result = await desk.overview(conversation_id, session_id)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return ConversationOverviewResponse(
        conversation=to_conversation_response(result.conversation),
        messages=Page[MessageResponse](
            data=[to_message_response(message) for message in result.messages.data],
            current_page=result.messages.current_page,
            last_page=result.messages.last_page,
        ),
        position=result.position,
        online_agents=result.online_agents,
        available_slots=result.available_slots,
        call=to_call_response(result.call),
    )


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=Page[MessageResponse],
)
async def get_messages_page(
    conversation_id: int,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> Page[MessageResponse]:
    try:
        result = await desk.message_page(
            conversation_id, SenderKind.VISITOR, session_id, page, limit
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
    session_id: str = Depends(get_visitor_session_id),
) -> MessageListResponse:
    try:
        messages = await desk.list_messages(
            conversation_id, SenderKind.VISITOR, session_id, before, limit
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_message_list(messages, desk.page_limit(limit))


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    conversation_id: int,
    payload: SendMessageRequest,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> MessageResponse:
    try:
        message = await desk.post_message(
            conversation_id, SenderKind.VISITOR, session_id, payload.body
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_message_response(message)


@router.post(
    "/conversations/{conversation_id}/files",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_file(
    conversation_id: int,
    file: UploadFile = File(...),
    caption: str = Form(default="", max_length=4000),
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> MessageResponse:
    data = await file.read(desk.settings.max_upload_bytes + 1)
    try:
        message = await desk.post_file(
            conversation_id,
            SenderKind.VISITOR,
            session_id,
            filename=file.filename or "upload",
            content_type=file.content_type or "application/octet-stream",
            data=data,
            caption=caption,
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_message_response(message)


@router.get("/conversations/{conversation_id}/files/{file_id}")
async def download_file(
    conversation_id: int,
    file_id: str,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> Response:
    try:
        descriptor, data = await desk.get_file(
            conversation_id, SenderKind.VISITOR, session_id, file_id
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return Response(
        content=data,
        media_type=descriptor.content_type,
        headers={"Content-Disposition": f'attachment; filename="{descriptor.filename}"'},
    )


@router.post("/conversations/{conversation_id}/close", response_model=ConversationResponse)
async def close_conversation(
    conversation_id: int,
    payload: CloseConversationRequest | None = None,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> ConversationResponse:
    closed_by = payload.closed_by if payload is not None else None
    try:
        conversation = await desk.close_conversation(
            conversation_id, SenderKind.VISITOR, session_id, closed_by or "The visitor"
        )
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return to_conversation_response(conversation)


@router.get(
    "/conversations/{conversation_id}/transcript",
    response_class=PlainTextResponse,
)
async def get_transcript(
    conversation_id: int,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> PlainTextResponse:
    try:
        text = await desk.transcript(conversation_id, SenderKind.VISITOR, session_id)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return PlainTextResponse(
        text,
        headers={
            "Content-Disposition": f'attachment; filename="conversation-{conversation_id}.txt"'
        },
    )


@router.get(
    "/conversations/{conversation_id}/position",
    response_model=QueuePositionResponse,
)
async def get_position(
    conversation_id: int,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> QueuePositionResponse:
    try:
        position = await desk.visitor_position(conversation_id, session_id)
        session = await desk.get_session(conversation_id)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return QueuePositionResponse(
        conversation_id=conversation_id,
        status=session.conversation.status,
        position=position,
    )


@router.get("/slots", response_model=SlotListResponse)
async def list_slots(
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = Query(default=None, ge=1, le=200),
    desk: SupportDesk = Depends(get_desk),
) -> SlotListResponse:
    return SlotListResponse(
        slots=desk.list_slots(start, end, limit),
        slot_minutes=desk.scheduler.grid.slot_minutes,
        timezone=desk.scheduler.grid.timezone,
    )


@router.post(
    "/conversations/{conversation_id}/slot",
    response_model=SlotReservationResponse,
)
async def reserve_slot(
    conversation_id: int,
    payload: ReserveSlotRequest,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> SlotReservationResponse:
    try:
        conversation = await desk.reserve_slot(conversation_id, session_id, payload.slot_time)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return SlotReservationResponse(
        conversation=to_conversation_response(conversation),
        slot_time=conversation.slot_time,
    )


@router.delete(
    "/conversations/{conversation_id}/slot",
    response_model=SlotReleaseResponse,
)
async def release_slot(
    conversation_id: int,
    desk: SupportDesk = Depends(get_desk),
    session_id: str = Depends(get_visitor_session_id),
) -> SlotReleaseResponse:
    try:
        position = await desk.release_slot(conversation_id, session_id)
        session = await desk.get_session(conversation_id)
    except SERVICE_ERRORS as exc:
        raise_for_service_error(exc, desk)
    return SlotReleaseResponse(
        conversation=to_conversation_response(session.conversation),
        position=position,
    )
