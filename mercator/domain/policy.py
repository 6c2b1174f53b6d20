"""
Agent Policy Model

Pure data describing how an agent bids, treats partnership proposals, decides that
something is wrong (exceptions) and how often it reviews its strategy. Policies are
persisted as JSON in append-only ``PolicyVersion`` rows; this module only knows how to
build, validate and merge them.
"""

from __future__ import annotations

import copy
from decimal import Decimal

from pydantic import BaseModel, Field, ValidationError, model_validator

from mercator.core.exceptions import PolicyError
from mercator.domain.models import AgentType


class BiddingPolicy(BaseModel):
    target_margin: float = Field(0.20, ge=0, lt=1)
    min_margin: float = Field(0.14, ge=0, lt=1)
    skip_below: Decimal = Field(Decimal("0.001"), ge=0)

    @model_validator(mode="after")
    def check_margins(self) -> BiddingPolicy:
        if self.min_margin > self.target_margin:
            raise ValueError("min_margin cannot exceed target_margin")
        return self


class AutoAccept(BaseModel):
    min_reputation: float = Field(2.5, ge=0, le=5)
    min_split: int = Field(48, ge=0, le=100)


class AutoReject(BaseModel):
    max_reputation: float = Field(1.5, ge=0, le=5)
    blocked_agents: list[str] = Field(default_factory=list)


class RequireAdvisor(BaseModel):
    high_value_threshold: float = Field(4.0, ge=0, le=5)


class PartnershipPolicy(BaseModel):
    auto_accept: AutoAccept = Field(default_factory=AutoAccept)
    auto_reject: AutoReject = Field(default_factory=AutoReject)
    require_brain: RequireAdvisor = Field(default_factory=RequireAdvisor)


class ExceptionPolicy(BaseModel):
    consecutive_losses: int = Field(5, ge=1)
    balance_below: Decimal = Field(Decimal("0.2"), ge=0)
    reputation_drop: float = Field(0.8, ge=0)
    win_rate_drop_percent: float = Field(15, ge=0)


class Accelerate(BaseModel):
    losses_above: int = Field(4, ge=0)


class Decelerate(BaseModel):
    stable_rounds: int = Field(16, ge=0)  # 0 disables deceleration


class ReviewPolicy(BaseModel):
    base_frequency_rounds: int = Field(10, ge=1)
    accelerate_if: Accelerate = Field(default_factory=Accelerate)
    decelerate_if: Decelerate = Field(default_factory=Decelerate)


class Policy(BaseModel):
    bidding: BiddingPolicy = Field(default_factory=BiddingPolicy)
    partnerships: PartnershipPolicy = Field(default_factory=PartnershipPolicy)
    exceptions: ExceptionPolicy = Field(default_factory=ExceptionPolicy)
    qbr: ReviewPolicy = Field(default_factory=ReviewPolicy)


class PerTaskCosts(BaseModel):
    llm_inference: Decimal = Decimal("0")
    data_retrieval: Decimal = Decimal("0")
    storage: Decimal = Decimal("0")
    submission: Decimal = Decimal("0")


class PerBidCosts(BaseModel):
    bid_submission: Decimal = Decimal("0")


class PeriodicCosts(BaseModel):
    brain_wakeup: Decimal = Decimal("0")
    idle_overhead: Decimal = Decimal("0")


class CostStructure(BaseModel):
    per_task: PerTaskCosts = Field(default_factory=PerTaskCosts)
    per_bid: PerBidCosts = Field(default_factory=PerBidCosts)
    periodic: PeriodicCosts = Field(default_factory=PeriodicCosts)


def _costs(llm: str, data: str, storage: str, submission: str = "0.002") -> dict:
    return {
        "per_task": {
            "llm_inference": llm,
            "data_retrieval": data,
            "storage": storage,
            "submission": submission,
        },
        "per_bid": {"bid_submission": "0.001"},
        "periodic": {"brain_wakeup": "0.001", "idle_overhead": "0.001"},
    }


AGENT_COSTS: dict[AgentType, dict] = {
    AgentType.CATALOG: _costs("0.03", "0.02", "0.005"),
    AgentType.REVIEW: _costs("0.04", "0.025", "0.005"),
    AgentType.CURATION: _costs("0.05", "0.01", "0.005"),
    AgentType.SELLER: _costs("0.02", "0.005", "0.002"),
}


def _personality(
    target_margin: float,
    min_margin: float,
    skip_below: str,
    accept: tuple[float, int],
    reject_below: float,
    high_value: float,
    exceptions: tuple[int, str, float, float],
    review: tuple[int, int, int],
) -> dict:
    losses, balance_below, reputation_drop, win_rate_drop = exceptions
    base, losses_above, stable_rounds = review
    return {
        "bidding": {"target_margin": target_margin, "min_margin": min_margin, "skip_below": skip_below},
        "partnerships": {
            "auto_accept": {"min_reputation": accept[0], "min_split": accept[1]},
            "auto_reject": {"max_reputation": reject_below, "blocked_agents": []},
            "require_brain": {"high_value_threshold": high_value},
        },
        "exceptions": {
            "consecutive_losses": losses,
            "balance_below": balance_below,
            "reputation_drop": reputation_drop,
            "win_rate_drop_percent": win_rate_drop,
        },
        "qbr": {
            "base_frequency_rounds": base,
            "accelerate_if": {"losses_above": losses_above},
            "decelerate_if": {"stable_rounds": stable_rounds},
        },
    }


PERSONALITY_DEFAULTS: dict[str, dict] = {
    "balanced": _personality(0.20, 0.14, "0.001", (2.5, 48), 1.5, 4.0, (5, "0.2", 0.8, 15), (10, 4, 16)),
    "aggressive": _personality(0.16, 0.10, "0.001", (2.0, 40), 1.0, 4.5, (8, "0.1", 1.5, 25), (12, 6, 20)),
    "conservative": _personality(0.25, 0.18, "0.002", (3.5, 55), 2.0, 4.25, (3, "0.3", 0.5, 10), (8, 2, 15)),
    "profit-maximizer": _personality(0.22, 0.16, "0.002", (3.0, 52), 1.5, 4.0, (5, "0.25", 0.8, 15), (10, 4, 18)),
    "volume-chaser": _personality(0.15, 0.10, "0.001", (2.0, 40), 1.0, 4.5, (8, "0.1", 1.5, 25), (12, 6, 20)),
}

DEFAULT_PERSONALITY = "balanced"


def default_policy(personality: str | None = None) -> Policy:
    data = PERSONALITY_DEFAULTS.get(personality or DEFAULT_PERSONALITY, PERSONALITY_DEFAULTS[DEFAULT_PERSONALITY])
    return Policy.model_validate(data)


def default_costs(agent_type: AgentType) -> CostStructure:
    return CostStructure.model_validate(AGENT_COSTS[agent_type])


def _deep_merge(base: dict, override: dict) -> dict:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def merge_policy(policy: Policy, delta: dict) -> Policy:
    """
    Apply a partial policy delta and return a new validated Policy.

    The delta uses the same nesting as the policy JSON, e.g.
    ``{"bidding": {"target_margin": 0.12}}``. Unknown sections are rejected so that a
    malformed advisor response cannot silently be stored.
    """
    unknown = set(delta) - set(Policy.model_fields)
    if unknown:
        raise PolicyError(f"Unknown policy sections: {sorted(unknown)}")

    merged = _deep_merge(policy.model_dump(mode="json"), delta)
    try:
        return Policy.model_validate(merged)
    except ValidationError as e:
        raise PolicyError(f"Invalid policy delta: {e}") from e
