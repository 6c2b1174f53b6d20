"""
Autopilot

Pure decision functions for an agent: bid pricing and scoring, partnership triage,
exception detection, review scheduling and lifecycle classification.

Nothing in this module touches the database, the network or the clock. Callers pass
in ORM rows (or anything with the same attributes) and get plain values back.
"""

from __future__ import annotations

import enum
import math
from decimal import ROUND_CEILING, Decimal

from pydantic import BaseModel

from mercator.domain.models import AgentStatus, AgentType
from mercator.domain.money import QUANTUM, ZERO, to_money
from mercator.domain.policy import CostStructure, Policy

SCORE_BASE = 100.0
REPUTATION_CAP = 5.0
REPUTATION_WEIGHT = 2.0

DEFAULT_WAKEUP_RATE = Decimal("0.3")
LOW_RUNWAY_ROUNDS = 5
REVIEW_ACCELERATION = 0.6
REVIEW_DECELERATION = 1.5


class BidAction(enum.Enum):
    BID = "bid"
    SKIP = "skip"


class PartnershipAction(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    ESCALATE = "escalate"


class ExceptionType(enum.Enum):
    CONSECUTIVE_LOSSES = "consecutive_losses"
    LOW_BALANCE = "low_balance"
    REPUTATION_DROP = "reputation_drop"
    WIN_RATE_DROP = "win_rate_drop"


class BidDecision(BaseModel):
    action: BidAction
    amount: Decimal | None = None
    reasoning: str


class PartnershipProposal(BaseModel):
    partner_id: str
    partner_type: AgentType
    partner_reputation: float
    proposed_split: int  # percent the proposer keeps


class PartnershipDecision(BaseModel):
    action: PartnershipAction
    reasoning: str


class ExceptionTrigger(BaseModel):
    type: ExceptionType
    detail: str
    current_value: float
    threshold: float


# ---------------------------------------------------------------------------
# Costs and scoring
# ---------------------------------------------------------------------------

def task_cost(costs: CostStructure) -> Decimal:
    per_task = costs.per_task
    return per_task.llm_inference + per_task.data_retrieval + per_task.storage + per_task.submission


def all_in_cost(costs: CostStructure, living_cost: Decimal, wakeup_rate: Decimal = DEFAULT_WAKEUP_RATE) -> Decimal:
    """Break-even price for one task, including the amortized per-round overhead."""
    return (
        task_cost(costs)
        + costs.per_bid.bid_submission
        + to_money(living_cost)
        + costs.periodic.brain_wakeup * wakeup_rate
    )


def round_overhead(costs: CostStructure, living_cost: Decimal, wakeup_rate: Decimal = DEFAULT_WAKEUP_RATE) -> Decimal:
    return costs.per_bid.bid_submission + to_money(living_cost) + costs.periodic.brain_wakeup * wakeup_rate


def score_bid(amount, reputation: float) -> float:
    """Higher is better. Price dominates; reputation is a single-digit-percent bonus."""
    amount = float(amount)
    if amount <= 0:
        return 0.0
    bonus = min(max(reputation or 0.0, 0.0), REPUTATION_CAP) * REPUTATION_WEIGHT
    return (SCORE_BASE + bonus) / amount


def _price_at_margin(cost: Decimal, margin: float) -> Decimal:
    # Round up so the quoted price never dips below the margin it was priced at
    price = cost / (Decimal(1) - Decimal(str(margin)))
    return price.quantize(QUANTUM, rounding=ROUND_CEILING)


# ---------------------------------------------------------------------------
# Bidding
# ---------------------------------------------------------------------------

def evaluate_bid(task, policy: Policy, costs: CostStructure, balance, living_cost) -> BidDecision:
    """
    Decide whether and how much to bid on a task.

    Tries the target margin first, then falls back to bidding the task's ceiling as long
    as that still clears the minimum margin. Every BID decision is at or above the
    all-in cost.
    """
    ceiling = to_money(task.max_bid)
    balance = to_money(balance)
    bidding = policy.bidding

    if ceiling < bidding.skip_below:
        return BidDecision(
            action=BidAction.SKIP,
            reasoning=f"Ceiling ${ceiling} is below skip threshold ${bidding.skip_below}",
        )

    all_in = all_in_cost(costs, living_cost)
    worst_case_spend = task_cost(costs) + costs.per_bid.bid_submission
    can_afford = balance >= worst_case_spend

    target_bid = _price_at_margin(all_in, bidding.target_margin)
    if target_bid <= ceiling:
        if not can_afford:
            return BidDecision(
                action=BidAction.SKIP,
                reasoning=f"Insufficient balance: ${balance} < ${worst_case_spend} worst-case spend",
            )
        return BidDecision(
            action=BidAction.BID,
            amount=target_bid,
            reasoning=(
                f"Target margin {bidding.target_margin:.0%}: bidding ${target_bid} "
                f"(all-in cost ${all_in}, ceiling ${ceiling})"
            ),
        )

    min_bid = _price_at_margin(all_in, bidding.min_margin)
    if min_bid > ceiling:
        return BidDecision(
            action=BidAction.SKIP,
            reasoning=(
                f"Would lose money: minimum-margin price ${min_bid} exceeds ceiling ${ceiling} "
                f"(all-in cost ${all_in})"
            ),
        )

    if not can_afford:
        return BidDecision(
            action=BidAction.SKIP,
            reasoning=f"Insufficient balance: ${balance} < ${worst_case_spend} worst-case spend",
        )

    return BidDecision(
        action=BidAction.BID,
        amount=ceiling,
        reasoning=(
            f"Target price ${target_bid} above ceiling; bidding ceiling ${ceiling} "
            f"which clears min margin {bidding.min_margin:.0%}"
        ),
    )


# ---------------------------------------------------------------------------
# Partnerships
# ---------------------------------------------------------------------------

def evaluate_partnership(proposal: PartnershipProposal, policy: Policy, self_type: AgentType) -> PartnershipDecision:
    rules = policy.partnerships
    reputation = proposal.partner_reputation
    our_split = 100 - proposal.proposed_split

    if proposal.partner_type == self_type:
        return PartnershipDecision(
            action=PartnershipAction.REJECT,
            reasoning=f"Same type ({self_type.value}) agents are competitors",
        )

    if proposal.partner_id in rules.auto_reject.blocked_agents:
        return PartnershipDecision(action=PartnershipAction.REJECT, reasoning="Partner is blocked")

    if reputation <= rules.auto_reject.max_reputation:
        return PartnershipDecision(
            action=PartnershipAction.REJECT,
            reasoning=f"Reputation {reputation} at or below {rules.auto_reject.max_reputation}",
        )

    if reputation >= rules.auto_accept.min_reputation and our_split >= rules.auto_accept.min_split:
        return PartnershipDecision(
            action=PartnershipAction.ACCEPT,
            reasoning=f"Reputation {reputation} and our split {our_split}% meet auto-accept rules",
        )

    if reputation > rules.require_brain.high_value_threshold:
        return PartnershipDecision(
            action=PartnershipAction.ESCALATE,
            reasoning=f"High-value partner (reputation {reputation}) with split {our_split}% needs review",
        )

    return PartnershipDecision(
        action=PartnershipAction.REJECT,
        reasoning=f"Split {our_split}% or reputation {reputation} outside auto-accept rules",
    )


# ---------------------------------------------------------------------------
# Exceptions and reviews
# ---------------------------------------------------------------------------

def detect_exception(state, policy: Policy, balance, reputation: float) -> ExceptionTrigger | None:
    """Return the highest-priority threshold breach, or None."""
    thresholds = policy.exceptions
    losses = state.consecutive_losses or 0

    if losses >= thresholds.consecutive_losses:
        return ExceptionTrigger(
            type=ExceptionType.CONSECUTIVE_LOSSES,
            detail=f"Lost {losses} auctions in a row",
            current_value=losses,
            threshold=thresholds.consecutive_losses,
        )

    balance = to_money(balance)
    if balance < thresholds.balance_below:
        return ExceptionTrigger(
            type=ExceptionType.LOW_BALANCE,
            detail=f"Balance ${balance} below ${thresholds.balance_below}",
            current_value=float(balance),
            threshold=float(thresholds.balance_below),
        )

    checkpoint = state.reputation_at_last_check
    if checkpoint is not None:
        drop = checkpoint - reputation
        if drop > thresholds.reputation_drop:
            return ExceptionTrigger(
                type=ExceptionType.REPUTATION_DROP,
                detail=f"Reputation fell {drop:.3f} since last check ({checkpoint} -> {reputation})",
                current_value=drop,
                threshold=thresholds.reputation_drop,
            )

    win_rate_drop = ((state.win_rate_at_last_check or 0.0) - (state.win_rate_last_20 or 0.0)) * 100
    if win_rate_drop > thresholds.win_rate_drop_percent:
        return ExceptionTrigger(
            type=ExceptionType.WIN_RATE_DROP,
            detail=f"Win rate fell {win_rate_drop:.1f} points since last check",
            current_value=win_rate_drop,
            threshold=thresholds.win_rate_drop_percent,
        )

    return None


def review_interval(state, policy: Policy) -> int:
    review = policy.qbr
    base = review.base_frequency_rounds
    losses = state.consecutive_losses or 0

    if losses > review.accelerate_if.losses_above:
        return max(1, math.floor(base * REVIEW_ACCELERATION))

    stable_rounds = review.decelerate_if.stable_rounds
    if stable_rounds and losses == 0:
        since_change = (state.current_round or 0) - (state.last_policy_change_round or 0)
        if since_change >= stable_rounds:
            return max(1, math.floor(base * REVIEW_DECELERATION))

    return base


def is_review_due(state, policy: Policy, last_review_round: int) -> bool:
    return (state.current_round or 0) - (last_review_round or 0) >= review_interval(state, policy)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def estimate_runway(balance, costs: CostStructure) -> float:
    per_round = task_cost(costs) + costs.per_bid.bid_submission + costs.periodic.idle_overhead
    if per_round <= ZERO:
        return math.inf
    return float(to_money(balance) / per_round)


def classify_lifecycle(
    current: AgentStatus, balance, costs: CostStructure, low_runway_rounds: int = LOW_RUNWAY_ROUNDS
) -> AgentStatus:
    balance = to_money(balance)
    if balance <= ZERO:
        return AgentStatus.DEAD
    if current in (AgentStatus.DEAD, AgentStatus.UNFUNDED):
        return AgentStatus.ACTIVE
    if current == AgentStatus.PAUSED:
        return AgentStatus.PAUSED
    if estimate_runway(balance, costs) < low_runway_rounds:
        return AgentStatus.LOW_FUNDS
    return AgentStatus.ACTIVE
