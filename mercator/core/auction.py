import enum
from datetime import datetime
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mercator.core.observability import setup_tracing
from mercator.domain.autopilot import score_bid
from mercator.domain.models import Agent, AuditEvent, Bid, BidStatus, Task, TaskStatus

# Initialize OTEL
tracer = setup_tracing("auction")


class SettlementStatus(enum.Enum):
    SETTLED = "settled"
    EXPIRED = "expired"
    SKIPPED = "skipped"  # task was no longer open
    NOT_FOUND = "not_found"


class RankedBid(BaseModel):
    rank: int
    bid_id: str
    agent_id: str
    amount: Decimal
    reputation: float
    score: float
    created_at: datetime | None = None


class SettlementResult(BaseModel):
    task_id: str
    status: SettlementStatus
    ranked: list[RankedBid] = Field(default_factory=list)
    winner: RankedBid | None = None
    reason: str = ""

    @property
    def bid_count(self) -> int:
        return len(self.ranked)

    def score_gap(self, agent_id: str) -> float | None:
        """How far an agent's score was behind the winner's, for per-agent feedback."""
        if not self.winner:
            return None
        for entry in self.ranked:
            if entry.agent_id == agent_id:
                return self.winner.score - entry.score
        return None


def _submitted_at(bid: Bid) -> datetime:
    # Rows reloaded from the store are naive, fresh ones are aware; compare as naive UTC
    return bid.created_at.replace(tzinfo=None) if bid.created_at else datetime.min


class AuctionSettlement:
    @staticmethod
    def ranked_bids(session: Session, task_id: str, pending_only: bool = False) -> list[RankedBid]:
        """
        Score every bid on a task against its bidder's current reputation.

        Highest score first; equal scores go to the earliest submission, then to the
        lowest bid id, so the order never depends on how the store returns rows.
        """
        query = session.query(Bid, Agent).join(Agent, Agent.id == Bid.agent_id).filter(Bid.task_id == task_id)
        if pending_only:
            query = query.filter(Bid.status == BidStatus.PENDING)

        scored = [(score_bid(bid.amount, agent.reputation), bid, agent) for bid, agent in query.all()]
        scored.sort(key=lambda s: (-s[0], _submitted_at(s[1]), s[1].id))

        return [
            RankedBid(
                rank=i + 1,
                bid_id=bid.id,
                agent_id=agent.id,
                amount=bid.amount,
                reputation=agent.reputation,
                score=score,
                created_at=bid.created_at,
            )
            for i, (score, bid, agent) in enumerate(scored)
        ]

    @staticmethod
    async def close_auction(session: Session, task_id: str, nc=None) -> SettlementResult:
        """
        Resolve one task's auction.

        Only OPEN tasks are settled; anything else is a no-op so that re-running a round
        (or racing a background task) cannot pick a second winner.
        """
        from mercator.domain.events import AuctionClosed, AuctionExpired, publish_event

        with tracer.start_as_current_span("auction_settlement") as span:
            span.set_attribute("task.id", task_id)

            task = session.query(Task).filter(Task.id == task_id).with_for_update().first()
            if not task:
                logger.warning(f"[component:auction] Task {task_id} not found")
                return SettlementResult(task_id=task_id, status=SettlementStatus.NOT_FOUND, reason="Task not found")
            if task.status != TaskStatus.OPEN:
                return SettlementResult(
                    task_id=task_id, status=SettlementStatus.SKIPPED, reason=f"Task already {task.status.value}"
                )

            ranked = AuctionSettlement.ranked_bids(session, task_id, pending_only=True)
            span.set_attribute("auction.bid_count", len(ranked))

            if not ranked:
                task.status = TaskStatus.EXPIRED
                session.add(
                    AuditEvent(
                        event_type="task_expired",
                        task_id=task.id,
                        round_number=task.round_number,
                        details={"reason": "no bids"},
                    )
                )
                session.commit()
                logger.info(f"[component:auction] Task {task_id} expired with no bids")
                await publish_event(nc, "system.auction.expired", AuctionExpired(task_id=task_id, reason="no bids"))
                return SettlementResult(task_id=task_id, status=SettlementStatus.EXPIRED, reason="No bids")

            winner = ranked[0]
            scores = {entry.bid_id: entry.score for entry in ranked}
            for bid in session.query(Bid).filter(Bid.id.in_(scores)).all():
                bid.score = scores[bid.id]
                bid.status = BidStatus.WON if bid.id == winner.bid_id else BidStatus.LOST

            task.status = TaskStatus.ASSIGNED
            task.assigned_agent_id = winner.agent_id
            task.winning_bid_id = winner.bid_id

            session.add(
                AuditEvent(
                    event_type="auction_closed",
                    agent_id=winner.agent_id,
                    task_id=task.id,
                    round_number=task.round_number,
                    amount=winner.amount,
                    details={"score": winner.score, "bid_count": len(ranked), "winning_bid_id": winner.bid_id},
                )
            )
            session.commit()
            span.set_attribute("auction.winner", winner.agent_id)

            logger.info(
                f"[component:auction] Task {task_id} won by {winner.agent_id} at ${winner.amount} "
                f"(score {winner.score:.1f}, {len(ranked)} bids)"
            )
            await publish_event(
                nc,
                "system.auction.closed",
                AuctionClosed(
                    task_id=task_id,
                    winner_agent_id=winner.agent_id,
                    winning_bid_id=winner.bid_id,
                    amount=winner.amount,
                    score=winner.score,
                    bid_count=len(ranked),
                ),
            )
            return SettlementResult(task_id=task_id, status=SettlementStatus.SETTLED, ranked=ranked, winner=winner)
