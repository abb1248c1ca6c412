import json
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from app.api.presenters import to_call_response
from app.domain.entities import CallState, MediaOptions, utc_now
from app.domain.enums import CallEndReason, CallParty, SenderKind
from app.domain.exceptions import DeskError, StaleCallSignal
from app.infra.realtime.channels import (
    PRESENCE_CHANNEL,
    QUEUE_CHANNEL,
    agent_channel,
    call_party_channel,
    conversation_channel,
)
from app.infra.realtime.hub import WebSocketTransport
from app.schemas.call import CallCommand
from app.services.support_desk import SupportDesk

router = APIRouter()
logger = structlog.get_logger(__name__)

CALL_ACTIONS = {
    "call.initiate",
    "call.accept",
    "call.decline",
    "call.signal",
    "call.established",
    "call.failed",
    "call.renegotiate",
    "call.hangup",
    "call.ack",
}


def _parse_int(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _system_message(event: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "event": event,
        "payload": payload or {},
        "sent_at": utc_now().isoformat(),
    }


async def _dispatch_call(
    desk: SupportDesk, party: CallParty, caller_id: str, command: CallCommand
) -> CallState:
    relay = await desk.call_relay(command.conversation_id, party, caller_id)
    media = command.media.to_options() if command.media is not None else None

    if command.action == "call.initiate":
        return await relay.initiate(party, media)
    if command.action == "call.accept":
        return await relay.accept(party, media)
    if command.action == "call.decline":
        return await relay.decline(party)
    if command.action == "call.signal":
        await relay.relay_signal(party, command.signal)
        return relay.snapshot()
    if command.action == "call.established":
        return await relay.report_media_established(party)
    if command.action == "call.failed":
        return await relay.report_negotiation_failed(party, command.detail)
    if command.action == "call.renegotiate":
        return await relay.renegotiate(party, media or MediaOptions(), command.signal)
    if command.action == "call.hangup":
        return await relay.hangup(party, CallEndReason.NORMAL)
    return await relay.acknowledge(party)


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket) -> None:
    desk: SupportDesk | None = getattr(websocket.app.state, "desk", None)
    transport: WebSocketTransport | None = getattr(websocket.app.state, "transport", None)
    if desk is None or transport is None:
        await websocket.close(code=1011, reason="Realtime transport not initialized")
        return

    role = websocket.query_params.get("role", "").strip().lower()
    conversation_id = _parse_int(websocket.query_params.get("conversation_id"))
    initial_channels: list[str] = []

    if role == "visitor":
        caller_id = websocket.query_params.get("session_id", "").strip()
        if conversation_id is None or not caller_id:
            await websocket.close(
                code=1008,
                reason="Visitor websocket requires conversation_id and session_id query parameters",
            )
            return
        try:
            await desk.authorize(conversation_id, SenderKind.VISITOR, caller_id)
        except DeskError:
            await websocket.close(
                code=1008, reason="Conversation access denied for this visitor session"
            )
            return
        party = CallParty.VISITOR
        initial_channels.extend(
            [
                conversation_channel(conversation_id),
                call_party_channel(conversation_id, CallParty.VISITOR),
            ]
        )
    elif role == "agent":
        caller_id = websocket.query_params.get("agent_id", "").strip()
        if not caller_id:
            await websocket.close(
                code=1008, reason="Agent websocket requires agent_id query parameter"
            )
            return
        party = CallParty.AGENT
        initial_channels.extend([agent_channel(caller_id), QUEUE_CHANNEL, PRESENCE_CHANNEL])
        if conversation_id is not None:
            try:
                await desk.authorize(conversation_id, SenderKind.AGENT, caller_id)
            except DeskError:
                await websocket.close(code=1008, reason="Conversation access denied")
                return
            initial_channels.extend(
                [
                    conversation_channel(conversation_id),
                    call_party_channel(conversation_id, CallParty.AGENT),
                ]
            )
    else:
        await websocket.close(
            code=1008,
            reason="Unsupported role. Use role=visitor or role=agent",
        )
        return

    await transport.connect(websocket)
    for channel in initial_channels:
        await transport.subscribe(websocket, channel)
    await transport.send(
        websocket,
        _system_message("system.connected", {"role": role, "channels": initial_channels}),
    )
    if party == CallParty.AGENT:
        await desk.heartbeat(caller_id)

    try:
        while True:
            raw_message = await websocket.receive_text()
            if raw_message.strip().lower() == "ping":
                await transport.send(websocket, _system_message("system.pong"))
                continue

            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError:
                await transport.send(
                    websocket,
                    _system_message("system.error", {"detail": "Expected JSON payload"}),
                )
                continue
            if not isinstance(message, dict):
                await transport.send(
                    websocket,
                    _system_message("system.error", {"detail": "Expected a JSON object"}),
                )
                continue

            action = message.get("action")
            if action == "ping":
                await transport.send(websocket, _system_message("system.pong"))
                continue

            if action == "heartbeat" and party == CallParty.AGENT:
                await desk.heartbeat(caller_id)
                await transport.send(websocket, _system_message("system.heartbeat"))
                continue

            if action in {"subscribe_conversation", "unsubscribe_conversation"} and party == CallParty.AGENT:
                target_id = _parse_int(message.get("conversation_id"))
                if target_id is None:
                    await transport.send(
                        websocket,
                        _system_message("system.error", {"detail": "Invalid conversation_id"}),
                    )
                    continue
                channels = [
                    conversation_channel(target_id),
                    call_party_channel(target_id, CallParty.AGENT),
                ]
                if action == "unsubscribe_conversation":
                    for channel in channels:
                        await transport.unsubscribe(websocket, channel)
                    await transport.send(
                        websocket,
                        _system_message("system.unsubscribed", {"channels": channels}),
                    )
                    continue
                try:
                    await desk.authorize(target_id, SenderKind.AGENT, caller_id)
                except DeskError as exc:
                    await transport.send(
                        websocket, _system_message("system.error", {"detail": str(exc)})
                    )
                    continue
                for channel in channels:
                    await transport.subscribe(websocket, channel)
                await transport.send(
                    websocket,
                    _system_message("system.subscribed", {"channels": channels}),
                )
                continue

            if action in CALL_ACTIONS:
                if "conversation_id" not in message and conversation_id is not None:
                    message["conversation_id"] = conversation_id
                try:
                    command = CallCommand.model_validate(message)
                    state = await _dispatch_call(desk, party, caller_id, command)
                except StaleCallSignal as exc:
                    logger.info(
                        "stale_call_signal",
                        conversation_id=message.get("conversation_id"),
                        party=party.value,
                        action=action,
                        error=str(exc),
                    )
                    await transport.send(
                        websocket,
                        _system_message("system.error", {"action": action, "detail": str(exc)}),
                    )
                    continue
                except (DeskError, ValidationError) as exc:
                    await transport.send(
                        websocket,
                        _system_message("system.error", {"action": action, "detail": str(exc)}),
                    )
                    continue
                await transport.send(
                    websocket,
                    _system_message(
                        "system.ack",
                        {"action": action, "call": to_call_response(state).model_dump(mode="json")},
                    ),
                )
                continue

            await transport.send(
                websocket,
                _system_message(
                    "system.error", {"detail": "Unsupported action for current role"}
                ),
            )
    except WebSocketDisconnect:
        return
    finally:
        await transport.disconnect(websocket)
        if party == CallParty.VISITOR and conversation_id is not None:
            visitor_channel = call_party_channel(conversation_id, CallParty.VISITOR)
            if transport.subscriber_count(visitor_channel) == 0:
                await desk.visitor_disconnected(conversation_id)
        elif party == CallParty.AGENT:
            if transport.subscriber_count(agent_channel(caller_id)) == 0:
                await desk.agent_offline(caller_id)
