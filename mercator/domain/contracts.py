"""
Shared Schemas

Pydantic models for the two external boundaries (strategic advisor, payment rail) and
for the HTTP API request bodies.
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from mercator.domain.models import AgentType


class AdvisorRequest(BaseModel):
    """What the strategic advisor sees when an agent needs re-planning."""

    agent_id: str
    trigger_type: str = Field(..., description="Exception type, 'review' or 'partnership_review'")
    trigger_detail: str = ""
    round_number: int
    context: dict = Field(default_factory=dict, description="Identity, balance, history, market, policy")


class PartnershipInstruction(BaseModel):
    action: str = Field(..., description="accept or reject")
    partnership_id: str | None = None
    partner_id: str | None = None
    split: int | None = Field(None, ge=0, le=100)


class AdvisorResponse(BaseModel):
    policy_delta: dict = Field(default_factory=dict)
    reasoning: str = ""
    partnership_actions: list[PartnershipInstruction] = Field(default_factory=list)
    narrative: str = ""


class PaymentReceipt(BaseModel):
    settled: bool
    tx_hash: str | None = None
    error: str | None = None


class Transfer(BaseModel):
    """A ledger movement the payment rail should mirror on-chain."""

    kind: str  # platform_fee, escrow_deposit, escrow_claim
    from_wallet: str
    to_wallet: str
    amount: Decimal
    agent_id: str
    task_id: str | None = None


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------


class AgentCreateRequest(BaseModel):
    name: str
    type: AgentType
    personality: str = "balanced"
    initial_balance: Decimal = Field(Decimal("0"), ge=0)
    reputation: float = Field(3.0, ge=0, le=5)
    wallet_address: str | None = None
    investor_share_bps: int | None = Field(None, ge=0, le=10000)


class TaskCreateRequest(BaseModel):
    type: AgentType
    max_bid: Decimal = Field(..., gt=0)
    input_ref: str | None = None


class PolicyUpdateRequest(BaseModel):
    delta: dict
    reason: str | None = None

    @field_validator("delta")
    @classmethod
    def delta_not_empty(cls, value: dict) -> dict:
        if not value:
            raise ValueError("delta must change at least one field")
        return value


class PartnershipRequest(BaseModel):
    proposer_id: str
    target_id: str
    proposer_split: int = Field(..., ge=0, le=100)


class EscrowClaimRequest(BaseModel):
    agent_id: str
    holder_wallet: str
