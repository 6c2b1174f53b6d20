from decimal import Decimal

from sqlalchemy.orm import Session

from mercator.domain.models import Agent, RuntimeState
from mercator.domain.money import ZERO, to_money

WIN_RATE_WINDOW = 20


class RuntimeStateManager:
    """
    Per-agent runtime bookkeeping: streaks, trailing win rate, totals and the
    checkpoints used to measure drift between exception checks.
    """

    @staticmethod
    def get_or_create(session: Session, agent: Agent) -> RuntimeState:
        state = session.query(RuntimeState).filter_by(agent_id=agent.id).first()
        if state is None:
            state = RuntimeState(
                agent_id=agent.id,
                current_round=0,
                consecutive_wins=0,
                consecutive_losses=0,
                total_bids=0,
                total_wins=0,
                recent_results=[],
                win_rate_last_20=0.0,
                total_revenue=ZERO,
                total_costs=ZERO,
                total_brain_wakeups=0,
                total_brain_cost=ZERO,
                total_policy_changes=0,
                reputation_at_last_check=agent.reputation,
                win_rate_at_last_check=0.0,
                last_brain_wakeup_round=0,
                last_review_round=0,
            )
            session.add(state)
            session.flush()
        return state

    @staticmethod
    def record_bid_result(session: Session, agent: Agent, won: bool, round_number: int) -> RuntimeState:
        state = RuntimeStateManager.get_or_create(session, agent)

        state.total_bids = (state.total_bids or 0) + 1
        if won:
            state.total_wins = (state.total_wins or 0) + 1
            state.consecutive_wins = (state.consecutive_wins or 0) + 1
            state.consecutive_losses = 0
        else:
            state.consecutive_losses = (state.consecutive_losses or 0) + 1
            state.consecutive_wins = 0

        # Reassign rather than append so the JSON column is flagged dirty
        results = [*(state.recent_results or []), won][-WIN_RATE_WINDOW:]
        state.recent_results = results
        state.win_rate_last_20 = sum(1 for r in results if r) / len(results)
        state.current_round = max(state.current_round or 0, round_number)
        return state

    @staticmethod
    def advance_round(session: Session, agent: Agent, round_number: int) -> RuntimeState:
        state = RuntimeStateManager.get_or_create(session, agent)
        state.current_round = max(state.current_round or 0, round_number)
        return state

    @staticmethod
    def add_revenue(state: RuntimeState, revenue: Decimal, cost: Decimal):
        state.total_revenue = to_money(state.total_revenue) + to_money(revenue)
        state.total_costs = to_money(state.total_costs) + to_money(cost)

    @staticmethod
    def add_cost(state: RuntimeState, cost: Decimal):
        state.total_costs = to_money(state.total_costs) + to_money(cost)

    @staticmethod
    def record_advisor_call(state: RuntimeState, cost: Decimal, round_number: int, start_cooldown: bool = True):
        state.total_brain_wakeups = (state.total_brain_wakeups or 0) + 1
        state.total_brain_cost = to_money(state.total_brain_cost) + to_money(cost)
        state.total_costs = to_money(state.total_costs) + to_money(cost)
        if start_cooldown:
            state.last_brain_wakeup_round = round_number

    @staticmethod
    def checkpoint(state: RuntimeState, reputation: float):
        """Reset drift baselines so the next check measures from now."""
        state.reputation_at_last_check = reputation
        state.win_rate_at_last_check = state.win_rate_last_20 or 0.0

    @staticmethod
    def record_policy_change(state: RuntimeState, round_number: int, balance: Decimal, target_margin: float):
        state.last_policy_change_round = round_number
        state.total_policy_changes = (state.total_policy_changes or 0) + 1
        state.metrics_at_last_change = {
            "win_rate": state.win_rate_last_20 or 0.0,
            "balance": str(to_money(balance)),
            "consecutive_losses": state.consecutive_losses or 0,
            "target_margin": target_margin,
        }
