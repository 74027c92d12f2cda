"""Pydantic schemas for the bounded LLM arbitration contract."""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

ArbitrationDecision = Literal["select", "need_more_info", "request_context"]

# Evidence the model may ask for. Everything here is bounded and already scoped.
EvidenceType = Literal["widget_items", "panel_list", "chat_options", "recent_actions"]


class LLMCandidate(BaseModel):
    """Candidate as shown to the model: id, label and a short disambiguator only."""
    id: str = Field(..., description="Stable candidate id")
    label: str = Field(..., description="Visible label")
    sublabel: Optional[str] = Field(None, description="Short disambiguator")


class ArbitrationRequest(BaseModel):
    """Request sent to the language-model boundary."""
    contract_version: str = Field("1", description="Contract version")
    utterance: str = Field(..., description="Normalized user utterance")
    scope: str = Field(..., description="Bound scope key")
    candidates: List[LLMCandidate] = Field(..., min_length=1, description="Bounded candidate list")
    rejected_candidate_ids: List[str] = Field(default_factory=list, description="Previously rejected ids")
    evidence: Dict[str, Any] = Field(default_factory=dict, description="Enrichment evidence (retry only)")
    attempt: int = Field(1, ge=1, le=2, description="1 = initial call, 2 = retry")

    @property
    def candidate_ids(self) -> List[str]:
        return [c.id for c in self.candidates]


class ArbitrationResponse(BaseModel):
    """Decision returned by the model."""
    decision: ArbitrationDecision = Field(..., description="select | need_more_info | request_context")
    candidate_id: Optional[str] = Field(None, description="Chosen candidate id (select only)")
    confidence: float = Field(0.0, ge=0.0, le=1.0, description="Confidence 0-1")
    evidence_type: Optional[EvidenceType] = Field(None, description="Requested evidence (request_context only)")
    reason: str = Field("", description="Short explanation")

    @model_validator(mode="after")
    def _check_decision_fields(self) -> "ArbitrationResponse":
        if self.decision == "select" and not self.candidate_id:
            raise ValueError("select requires candidate_id")
        if self.decision == "request_context" and self.evidence_type is None:
            raise ValueError("request_context requires evidence_type")
        return self
