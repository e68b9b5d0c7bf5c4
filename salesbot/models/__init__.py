from salesbot.models.conversation import Conversation
from salesbot.models.lead import LeadAnalysisRun, LeadEntry
from salesbot.models.message import Message
from salesbot.models.product import Product
from salesbot.models.retry_entry import RetryEntry
from salesbot.models.transport_settings import TransportSettings

__all__ = [
    "Conversation",
    "Message",
    "RetryEntry",
    "Product",
    "LeadEntry",
    "LeadAnalysisRun",
    "TransportSettings",
]
