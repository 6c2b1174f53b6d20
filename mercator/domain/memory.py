from sqlalchemy.orm import Session

from mercator.domain.models import AgentMemory
from mercator.domain.money import to_money

BID_OUTCOME = "bid_outcome"
TASK_EXECUTION = "task_execution"
EXCEPTION = "exception"
REVIEW = "review"


class MemoryJournal:
    """
    Per-agent journal of what happened to it: auctions won and lost against whom,
    completed work, and what the advisor did about exceptions and reviews.
    Entries are written after the fact and never feed back into the round.
    """

    @staticmethod
    def record(
        session: Session, agent_id: str, memory_type: str, round_number: int, details: dict, task_id: str | None = None
    ) -> AgentMemory:
        memory = AgentMemory(
            agent_id=agent_id,
            memory_type=memory_type,
            round_number=round_number,
            task_id=task_id,
            details=details,
        )
        session.add(memory)
        return memory

    @staticmethod
    def recent(session: Session, agent_id: str, limit: int = 50, memory_type: str | None = None) -> list[AgentMemory]:
        query = session.query(AgentMemory).filter_by(agent_id=agent_id)
        if memory_type:
            query = query.filter_by(memory_type=memory_type)
        return query.order_by(AgentMemory.round_number.desc(), AgentMemory.created_at.desc()).limit(limit).all()

    @staticmethod
    def bid_outcome(settlement, agent_id: str) -> dict | None:
        """My bid and score next to the winner's, or None if the agent had no bid in the auction."""
        mine = next((entry for entry in settlement.ranked if entry.agent_id == agent_id), None)
        if mine is None or settlement.winner is None:
            return None
        winner = settlement.winner
        return {
            "won": winner.agent_id == agent_id,
            "amount": str(to_money(mine.amount)),
            "score": mine.score,
            "rank": mine.rank,
            "bid_count": settlement.bid_count,
            "winner_agent_id": winner.agent_id,
            "winner_amount": str(to_money(winner.amount)),
            "winner_score": winner.score,
            "score_gap": settlement.score_gap(agent_id),
        }

    @staticmethod
    def task_execution(distribution) -> dict:
        split = distribution.split
        return {
            "revenue": str(split.revenue),
            "operational_cost": str(split.operational_cost),
            "net_profit": str(split.net_profit),
            "agent_share": str(split.agent_share),
            "balance_credit": str(distribution.balance_credit),
            "reputation_before": distribution.reputation_before,
            "reputation_after": distribution.reputation_after,
        }

    @staticmethod
    def advisor_outcome(outcome) -> dict:
        return {
            "trigger_type": outcome.trigger_type,
            "source": outcome.source,
            "policy_changed": outcome.policy_changed,
            "policy_version": outcome.policy_version,
            "policy_delta": outcome.policy_delta,
            "reasoning": outcome.reasoning,
            "cost": str(to_money(outcome.cost)),
            "error": outcome.error,
        }
