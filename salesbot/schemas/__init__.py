from salesbot.schemas.chat import ChatMessage, ChatSession, MessageType, Sender
from salesbot.schemas.leads import LEAD_CATEGORIES, AnalyzedLead, LeadAnalysis, LeadAnalysisResponse
from salesbot.schemas.product import PriceRange, ProductItem, ProductsUpdate
from salesbot.schemas.webhook import InboundEvent, WebhookEnvelope, extract_inbound_event

__all__ = [
    "ChatMessage",
    "ChatSession",
    "MessageType",
    "Sender",
    "LEAD_CATEGORIES",
    "AnalyzedLead",
    "LeadAnalysis",
    "LeadAnalysisResponse",
    "PriceRange",
    "ProductItem",
    "ProductsUpdate",
    "InboundEvent",
    "WebhookEnvelope",
    "extract_inbound_event",
]
