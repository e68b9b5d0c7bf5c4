from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from salesbot.logging_config import get_logger
from salesbot.runtime import Runtime, get_runtime
from salesbot.schemas.webhook import InboundEvent, WebhookEnvelope, extract_inbound_event
from salesbot.services.conversation_service import ConversationOrchestrator

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    runtime: Runtime = Depends(get_runtime),
):
    """Meta subscription handshake."""
    expected = runtime.transport_settings.current().verify_token
    if mode == "subscribe" and token and token == expected:
        logger.info("Webhook verified")
        return challenge or ""
    logger.warning("Webhook verification failed", extra={"context": {"mode": mode}})
    raise HTTPException(status_code=403, detail="Verification failed")


async def process_inbound_event(orchestrator: ConversationOrchestrator, event: InboundEvent) -> None:
    """Background entry point. Errors end up in the log, never in the HTTP response."""
    try:
        outcome = await orchestrator.handle_inbound(event)
        logger.info(
            "Inbound processed",
            extra={"context": {"session_id": event.sender_id, "status": outcome.status.value}},
        )
    except Exception:
        logger.exception(
            "Inbound processing failed",
            extra={"context": {"session_id": event.sender_id, "message_id": event.message_id}},
        )


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
):
    """Acknowledge right away; the turn runs after the response is sent."""
    try:
        body = await request.json()
        envelope = WebhookEnvelope.model_validate(body)
    except (ValueError, ValidationError) as exc:
        logger.warning(f"Unreadable webhook payload: {exc}")
        return {"success": True, "message": "Ignored"}

    event = extract_inbound_event(envelope)
    if event is None:
        return {"success": True, "message": "No message"}

    background_tasks.add_task(process_inbound_event, runtime.orchestrator, event)
    return {"success": True, "message": "Accepted"}
