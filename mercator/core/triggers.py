"""
Exception / Review Trigger

Turns the autopilot's pure threshold checks into advisor calls. Detection is a fast,
read-only pass the round can wait for; the advisor calls themselves run in background
tasks and write their result back in a single transaction.
"""

import asyncio
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from mercator.core.config import AppConfig
from mercator.core.exceptions import AdvisorError, MercatorError, NotFoundError, PolicyError
from mercator.core.observability import set_span_attributes, setup_tracing
from mercator.domain.agents import AgentManager
from mercator.domain.autopilot import ExceptionTrigger, detect_exception, is_review_due
from mercator.domain.contracts import AdvisorRequest, AdvisorResponse
from mercator.domain.economy import EconomicEngine
from mercator.domain.models import Agent, DecisionRecord, Task, TaskStatus
from mercator.domain.money import ZERO, to_money
from mercator.domain.partnerships import PartnershipManager
from mercator.domain.state import RuntimeStateManager
from mercator.infra.advisor import fallback_response

tracer = setup_tracing("triggers")

REVIEW_TRIGGER = "review"
PARTNERSHIP_TRIGGER = "partnership_review"


class AdvisorOutcome(BaseModel):
    agent_id: str
    round_number: int
    trigger_type: str
    source: str = "fallback"  # advisor or fallback
    policy_changed: bool = False
    policy_version: int | None = None
    policy_delta: dict = Field(default_factory=dict)
    reasoning: str = ""
    cost: Decimal = ZERO
    error: str | None = None


class TriggerService:
    def __init__(self, session_factory, advisor=None, config: AppConfig | None = None, nc=None):
        self.session_factory = session_factory
        self.advisor = advisor
        self.config = config or AppConfig()
        self.nc = nc

    # ------------------------------------------------------------------
    # Detection (synchronous, state reads only)
    # ------------------------------------------------------------------

    def in_cooldown(self, last_wakeup_round: int | None, round_number: int) -> bool:
        if not last_wakeup_round:
            return False
        since = round_number - last_wakeup_round
        return 0 < since < self.config.rounds.advisor_cooldown_rounds

    def detect_exceptions(self, agent_ids: list[str], round_number: int) -> list[tuple[str, ExceptionTrigger]]:
        """
        Agents whose thresholds are breached this round, capped at the per-round advisor
        call limit. Agents that consulted the advisor within the cooldown window are skipped,
        and every agent returned here enters its cooldown now.
        """
        limit = self.config.rounds.max_advisor_calls_per_round
        detected = []

        with self.session_factory() as session:
            for agent_id in agent_ids:
                agent = session.get(Agent, agent_id)
                if agent is None:
                    continue
                state = RuntimeStateManager.get_or_create(session, agent)
                if self.in_cooldown(state.last_brain_wakeup_round, round_number):
                    continue

                try:
                    policy = AgentManager.current_policy(session, agent_id)
                except NotFoundError:
                    logger.warning(f"[component:triggers] Agent {agent_id} has no policy, skipping exception check")
                    continue

                trigger = detect_exception(state, policy, agent.balance, agent.reputation)
                if trigger is None:
                    continue
                if len(detected) >= limit:
                    logger.info(
                        f"[component:triggers] Advisor call limit of {limit} reached; {agent_id} "
                        f"({trigger.type.value}) waits for a later round"
                    )
                    continue
                detected.append((agent_id, trigger))
                # Cooldown starts at dispatch so a call still running next round is not sent twice
                state.last_brain_wakeup_round = round_number
            session.commit()

        return detected

    def reviews_due(self, agent_ids: list[str], round_number: int) -> list[str]:
        due = []
        with self.session_factory() as session:
            for agent_id in agent_ids:
                agent = session.get(Agent, agent_id)
                if agent is None:
                    continue
                state = RuntimeStateManager.get_or_create(session, agent)
                try:
                    policy = AgentManager.current_policy(session, agent_id)
                except NotFoundError:
                    continue
                if is_review_due(state, policy, state.last_review_round):
                    due.append(agent_id)
            session.commit()
        return due

    # ------------------------------------------------------------------
    # Advisor calls (background)
    # ------------------------------------------------------------------

    async def handle_exception(self, agent_id: str, trigger: ExceptionTrigger, round_number: int) -> AdvisorOutcome:
        from mercator.domain.events import ExceptionDetected, publish_event

        await publish_event(
            self.nc,
            "system.agent.exception",
            ExceptionDetected(
                agent_id=agent_id,
                round_number=round_number,
                exception_type=trigger.type.value,
                detail=trigger.detail,
            ),
        )
        return await self._replan(agent_id, trigger.type.value, trigger.detail, round_number, is_exception=True)

    async def run_review(self, agent_id: str, round_number: int) -> AdvisorOutcome:
        return await self._replan(agent_id, REVIEW_TRIGGER, "Scheduled strategy review", round_number, is_exception=False)

    async def escalate_partnership(self, partnership_id: str, round_number: int) -> AdvisorOutcome:
        with self.session_factory() as session:
            partnership = PartnershipManager.get(session, partnership_id)
            agent_id = partnership.target_id
            detail = (
                f"Partnership {partnership.id} from {partnership.proposer_id}: proposer keeps "
                f"{partnership.proposer_split}%"
            )
        return await self._replan(
            agent_id, PARTNERSHIP_TRIGGER, detail, round_number, is_exception=False, partnership_id=partnership_id
        )

    async def _replan(
        self,
        agent_id: str,
        trigger_type: str,
        detail: str,
        round_number: int,
        is_exception: bool,
        partnership_id: str | None = None,
    ) -> AdvisorOutcome:
        from mercator.domain.events import PolicyChanged, publish_event

        with tracer.start_as_current_span("advisor_call") as span:
            set_span_attributes(span, agent__id=agent_id, trigger__type=trigger_type, round=round_number)

            with self.session_factory() as session:
                agent = session.get(Agent, agent_id)
                if agent is None:
                    return AdvisorOutcome(
                        agent_id=agent_id, round_number=round_number, trigger_type=trigger_type, error="Agent not found"
                    )
                policy = AgentManager.current_policy(session, agent_id)
                request = self.build_request(session, agent, trigger_type, detail, round_number)

            response, source, error = await self._consult(request, policy, trigger_type, partnership_id)
            span.set_attribute("advisor.source", source)

            outcome = self._apply(
                agent_id, round_number, trigger_type, detail, response, source, is_exception, error
            )
            set_span_attributes(span, policy__changed=outcome.policy_changed, advisor__cost=outcome.cost)
            if outcome.policy_changed:
                await publish_event(
                    self.nc,
                    "system.agent.policy_changed",
                    PolicyChanged(
                        agent_id=agent_id,
                        version=outcome.policy_version,
                        source=source,
                        delta=outcome.policy_delta,
                    ),
                )
            return outcome

    async def _consult(
        self, request: AdvisorRequest, policy, trigger_type: str, partnership_id: str | None
    ) -> tuple[AdvisorResponse, str, str | None]:
        if self.advisor is None:
            return fallback_response(trigger_type, policy, partnership_id), "fallback", None

        try:
            response = await asyncio.wait_for(
                self.advisor.advise(request), timeout=self.config.advisor.timeout_seconds
            )
            return response, "advisor", None
        except TimeoutError:
            error = f"Advisor timed out after {self.config.advisor.timeout_seconds}s"
        except AdvisorError as e:
            error = str(e)
        except Exception as e:
            # Any advisor failure is contained to this agent; the fallback still applies
            logger.exception(f"[component:triggers] Unexpected advisor failure for {request.agent_id}")
            error = f"{e.__class__.__name__}: {e}"

        logger.warning(f"[component:triggers] {request.agent_id}: {error}; using fallback")
        return fallback_response(trigger_type, policy, partnership_id), "fallback", error

    def build_request(self, session: Session, agent: Agent, trigger_type: str, detail: str, round_number: int) -> AdvisorRequest:
        state = RuntimeStateManager.get_or_create(session, agent)
        policy_row = AgentManager.current_policy_row(session, agent.id)

        market = {
            task_type.value: {"open_tasks": count, "avg_ceiling": str(to_money(avg or 0))}
            for task_type, count, avg in session.query(Task.type, func.count(Task.id), func.avg(Task.max_bid))
            .filter(Task.status == TaskStatus.OPEN)
            .group_by(Task.type)
        }

        last_decision = None
        if state.metrics_at_last_change:
            last_decision = {
                "round": state.last_policy_change_round,
                "before": state.metrics_at_last_change,
                "now": {
                    "win_rate": state.win_rate_last_20 or 0.0,
                    "balance": str(to_money(agent.balance)),
                    "consecutive_losses": state.consecutive_losses or 0,
                },
            }

        return AdvisorRequest(
            agent_id=agent.id,
            trigger_type=trigger_type,
            trigger_detail=detail,
            round_number=round_number,
            context={
                "identity": {"name": agent.name, "type": agent.type.value, "personality": agent.personality},
                "balance": str(to_money(agent.balance)),
                "reputation": agent.reputation,
                "status": agent.status.value,
                "history": {
                    "current_round": state.current_round,
                    "consecutive_wins": state.consecutive_wins,
                    "consecutive_losses": state.consecutive_losses,
                    "total_bids": state.total_bids,
                    "total_wins": state.total_wins,
                    "win_rate_last_20": state.win_rate_last_20,
                    "total_revenue": str(to_money(state.total_revenue)),
                    "total_costs": str(to_money(state.total_costs)),
                },
                "market": market,
                "policy": policy_row.policy if policy_row else {},
                "policy_version": policy_row.version if policy_row else None,
                "last_decision": last_decision,
            },
        )

    def _apply(
        self,
        agent_id: str,
        round_number: int,
        trigger_type: str,
        detail: str,
        response: AdvisorResponse,
        source: str,
        is_exception: bool,
        error: str | None,
    ) -> AdvisorOutcome:
        """Write the advisor's answer back in one transaction."""
        outcome = AdvisorOutcome(
            agent_id=agent_id,
            round_number=round_number,
            trigger_type=trigger_type,
            source=source,
            reasoning=response.reasoning,
            error=error,
        )

        with self.session_factory() as session:
            agent = session.query(Agent).filter(Agent.id == agent_id).with_for_update().first()
            if agent is None:
                outcome.error = "Agent not found"
                return outcome
            state = RuntimeStateManager.get_or_create(session, agent)

            new_policy = None
            if response.policy_delta:
                try:
                    new_policy = AgentManager.append_policy(
                        session, agent_id, response.policy_delta, source=source, reason=response.reasoning[:500]
                    )
                except PolicyError as e:
                    logger.warning(f"[component:triggers] Rejected policy delta for {agent_id}: {e}")
                    outcome.error = str(e)

            cost = ZERO
            if source == "advisor":
                cost = EconomicEngine.debit(
                    session, agent, self.config.advisor.cost_per_call, "advisor_call", round_number,
                    details={"trigger": trigger_type},
                )
            RuntimeStateManager.record_advisor_call(state, cost, round_number, start_cooldown=is_exception)

            if is_exception:
                RuntimeStateManager.checkpoint(state, agent.reputation)
            if trigger_type == REVIEW_TRIGGER:
                state.last_review_round = round_number

            if new_policy is not None:
                RuntimeStateManager.record_policy_change(
                    state, round_number, agent.balance, new_policy.policy["bidding"]["target_margin"]
                )

            for action in response.partnership_actions:
                if not action.partnership_id or action.action not in ("accept", "reject"):
                    continue
                try:
                    PartnershipManager.resolve(
                        session, action.partnership_id, accept=action.action == "accept", reasoning=response.reasoning
                    )
                except MercatorError as e:
                    logger.warning(f"[component:triggers] Partnership action skipped for {agent_id}: {e}")

            session.add(
                DecisionRecord(
                    agent_id=agent_id,
                    round_number=round_number,
                    trigger_type=trigger_type,
                    trigger_detail=detail,
                    source=source,
                    policy_delta=response.policy_delta if new_policy is not None else {},
                    reasoning=response.reasoning,
                    partnership_actions=[a.model_dump() for a in response.partnership_actions],
                    narrative=response.narrative,
                    cost=cost,
                )
            )
            session.commit()

            outcome.cost = cost
            if new_policy is not None:
                outcome.policy_changed = True
                outcome.policy_version = new_policy.version
                outcome.policy_delta = response.policy_delta

        logger.info(
            f"[component:triggers] {agent_id} {trigger_type} handled by {source} in round {round_number}: "
            f"{outcome.policy_delta or 'no policy change'}"
        )
        return outcome
