from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

LEAD_CATEGORIES = ("serious", "stalled", "visiting", "followUp")


class AnalyzedLead(BaseModel):
    phone: str
    name: str = ""
    reason: str = ""


class LeadAnalysis(BaseModel):
    """Structured output expected back from the model."""

    serious: list[AnalyzedLead] = Field(default_factory=list)
    stalled: list[AnalyzedLead] = Field(default_factory=list)
    visiting: list[AnalyzedLead] = Field(default_factory=list)
    followUp: list[AnalyzedLead] = Field(default_factory=list)


class LeadAnalysisResponse(LeadAnalysis):
    model_config = ConfigDict(populate_by_name=True)

    last_updated: Optional[datetime] = Field(default=None, alias="lastUpdated")
    analyzed_sessions: int = Field(default=0, alias="analyzedSessions")
    skipped: bool = False
