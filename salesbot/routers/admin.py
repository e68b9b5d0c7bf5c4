"""Dashboard API: conversations, operator replies, inventory, settings, leads."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from salesbot.logging_config import get_logger
from salesbot.runtime import Runtime, get_runtime
from salesbot.schemas.product import ProductsUpdate
from salesbot.services.lead_service import LeadAnalysisError
from salesbot.services.session_store import SessionNotFoundError
from salesbot.services.whatsapp_service import DispatchError

logger = get_logger("admin")

router = APIRouter(prefix="/api", tags=["admin"])


# === SCHEMAS ===


class ToggleBotRequest(BaseModel):
    active: bool


class SendMessageRequest(BaseModel):
    to: str
    text: str


class TransportSettingsUpdate(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None
    verify_token: Optional[str] = None
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    business_account_id: Optional[str] = None


class VerifyConfigRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    access_token: Optional[str] = None
    phone_number_id: Optional[str] = None


# === CHATS ===


@router.get("/chats")
async def list_chats(runtime: Runtime = Depends(get_runtime)):
    """All sessions, most recently active first."""
    return [s.model_dump(by_alias=True, mode="json") for s in runtime.store.list_sessions()]


@router.get("/chats/{session_id}")
async def get_chat(session_id: str, runtime: Runtime = Depends(get_runtime)):
    session = runtime.store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Chat '{session_id}' not found")
    return session.model_dump(by_alias=True, mode="json")


@router.post("/chat/{session_id}/toggle-bot")
async def toggle_bot(session_id: str, data: ToggleBotRequest, runtime: Runtime = Depends(get_runtime)):
    """Turning the bot on also clears an escalation."""
    try:
        session = runtime.store.set_bot_active(session_id, data.active)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Chat '{session_id}' not found")
    return {"success": True, "botActive": session.bot_active, "isEscalated": session.is_escalated}


@router.post("/send-message")
async def send_message(data: SendMessageRequest, runtime: Runtime = Depends(get_runtime)):
    if not data.text or not data.text.strip():
        raise HTTPException(status_code=400, detail="Message text cannot be empty")
    try:
        message = await runtime.orchestrator.send_operator_reply(data.to, data.text)
    except DispatchError as exc:
        logger.error("Operator reply failed", extra={"context": {"to": data.to, "error": str(exc)}})
        raise HTTPException(status_code=500, detail=f"Failed to send message: {exc}")
    return {"success": True, "message": message.model_dump(by_alias=True, mode="json")}


# === INVENTORY ===


@router.get("/products")
async def list_products(runtime: Runtime = Depends(get_runtime)):
    return [p.model_dump(by_alias=True, mode="json") for p in runtime.inventory.snapshot()]


@router.post("/products")
async def replace_products(data: ProductsUpdate, runtime: Runtime = Depends(get_runtime)):
    ids = [p.id for p in data.products]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Product ids must be unique")
    inventory = runtime.inventory.replace(data.products)
    return {"success": True, "count": len(inventory)}


# === TRANSPORT SETTINGS ===


@router.get("/settings")
async def get_transport_settings(runtime: Runtime = Depends(get_runtime)):
    creds = runtime.transport_settings.current()
    return {**creds.public_view(), "configured": creds.can_send}


@router.post("/settings")
async def update_transport_settings(data: TransportSettingsUpdate, runtime: Runtime = Depends(get_runtime)):
    creds = runtime.transport_settings.update(**data.model_dump())
    return {"success": True, **creds.public_view(), "configured": creds.can_send}


@router.post("/verify-meta-config")
async def verify_meta_config(data: VerifyConfigRequest, runtime: Runtime = Depends(get_runtime)):
    """Check a token/phone id pair against the Graph API. Falls back to the saved values."""
    current = runtime.transport_settings.current()
    access_token = data.access_token or current.access_token
    phone_number_id = data.phone_number_id or current.phone_number_id
    if not access_token or not phone_number_id:
        raise HTTPException(status_code=400, detail="Access token and phone number id are required")
    valid = await runtime.transport.verify_credentials(access_token, phone_number_id)
    return {"valid": valid}


# === LEADS ===


@router.post("/analyze-leads")
async def analyze_leads(force: bool = False, runtime: Runtime = Depends(get_runtime)):
    try:
        result = await runtime.lead_analyzer.analyze(force=force)
    except LeadAnalysisError as exc:
        raise HTTPException(status_code=502, detail=f"Lead analysis did not complete: {exc}")
    return result.model_dump(by_alias=True, mode="json")


@router.get("/leads")
async def get_leads(runtime: Runtime = Depends(get_runtime)):
    return runtime.lead_analyzer.get_cached().model_dump(by_alias=True, mode="json")


# === RETRY QUEUE ===


@router.get("/retry-queue")
async def list_retry_queue(runtime: Runtime = Depends(get_runtime)):
    return [
        {
            "id": entry.id,
            "sessionId": entry.session_id,
            "sourceMessageId": entry.source_message_id,
            "attempts": entry.attempts,
            "enqueuedAt": entry.enqueued_at.isoformat(),
            "lastError": entry.last_error,
        }
        for entry in runtime.retry_queue.pending()
    ]


@router.post("/retry-queue/process")
async def process_retry_queue(runtime: Runtime = Depends(get_runtime)):
    result = await runtime.sweeper.sweep()
    return {"success": True, **result.as_dict()}
