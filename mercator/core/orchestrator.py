import asyncio
import random
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import func

from mercator.core.auction import AuctionSettlement, SettlementResult, SettlementStatus
from mercator.core.bidding import BiddingService, BidOutcome
from mercator.core.config import AppConfig
from mercator.core.observability import set_span_attributes, setup_tracing
from mercator.core.triggers import TriggerService
from mercator.domain.agents import AgentManager
from mercator.domain.autopilot import classify_lifecycle
from mercator.domain.economy import EconomicEngine
from mercator.domain.memory import BID_OUTCOME, EXCEPTION, REVIEW, TASK_EXECUTION, MemoryJournal
from mercator.domain.models import BIDDING_STATUSES, Agent, AgentStatus, AuditEvent, RoundRecord, Task, TaskStatus, utc_now
from mercator.domain.money import ZERO, to_money
from mercator.domain.state import RuntimeStateManager
from mercator.domain.tasks import TaskManager
from mercator.infra.payments import LedgerOnlyGateway

# Initialize OTEL
tracer = setup_tracing("orchestrator")


class RoundSummary(BaseModel):
    round: int
    tasks_processed: int = 0
    bids_placed: int = 0
    auctions_closed: int = 0
    tasks_completed: int = 0
    tasks_expired: int = 0
    total_revenue: Decimal = ZERO
    living_costs_deducted: Decimal = ZERO
    exceptions_detected: int = 0
    advisor_invocations: int = 0
    reviews_dispatched: int = 0
    lifecycle_changes: int = 0
    agent_states: list[dict] = Field(default_factory=list)


class AgentRoundResult(BaseModel):
    agent_id: str
    won: bool = False
    completed: bool = False
    expired_task_id: str | None = None
    revenue: Decimal = ZERO


class RoundOrchestrator:
    """
    Drives one round of the agent economy.

    Every stage fans out over independent units (agents or tasks) and each unit works in
    its own session, so one agent's failure is logged and counted without stopping the
    round. Advisor calls are started in the background and land in a later round.
    """

    def __init__(self, session_factory, config: AppConfig | None = None, advisor=None, payments=None, nc=None, rng=None):
        self.session_factory = session_factory
        self.config = config or AppConfig()
        self.nc = nc
        self.payments = payments or LedgerOnlyGateway()
        self.rng = rng or random.Random()
        self.economy = EconomicEngine(self.config.economy)
        self.bidding = BiddingService(session_factory, self.config.economy)
        self.triggers = TriggerService(session_factory, advisor=advisor, config=self.config, nc=nc)
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=label)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if task.cancelled():
            logger.warning(f"[component:orchestrator] Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"[component:orchestrator] Background task {task.get_name()} failed")

    @property
    def pending_background(self) -> int:
        return len(self._background)

    async def drain(self):
        """Wait for every outstanding advisor call and journal write to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def dispatch_partnership_review(self, partnership_id: str, round_number: int) -> asyncio.Task:
        return self._spawn(
            self._consult_and_remember(self.triggers.escalate_partnership(partnership_id, round_number)),
            f"partnership:{partnership_id}",
        )

    async def _consult_and_remember(self, consultation, memory_type: str | None = None):
        outcome = await consultation
        self._remember(
            outcome.agent_id,
            memory_type or outcome.trigger_type,
            outcome.round_number,
            MemoryJournal.advisor_outcome(outcome),
        )
        return outcome

    def _remember(self, agent_id: str, memory_type: str, round_number: int, details: dict, task_id: str | None = None):
        """Journal an entry in the background; a failed write is logged by the done callback."""
        self._spawn(
            self._write_memory(agent_id, memory_type, round_number, details, task_id),
            f"memory:{memory_type}:{agent_id}:{round_number}",
        )

    async def _write_memory(self, agent_id: str, memory_type: str, round_number: int, details: dict, task_id: str | None):
        with self.session_factory() as session:
            MemoryJournal.record(session, agent_id, memory_type, round_number, details, task_id=task_id)
            session.commit()

    def next_round_number(self) -> int:
        with self.session_factory() as session:
            last = session.query(func.max(RoundRecord.number)).scalar()
        return (last or 0) + 1

    # ------------------------------------------------------------------
    # Round
    # ------------------------------------------------------------------

    async def run_round(self, round_number: int | None = None) -> RoundSummary:
        from mercator.domain.events import RoundCompleted, publish_event

        if round_number is None:
            round_number = self.next_round_number()
        started_at = utc_now()
        summary = RoundSummary(round=round_number)

        with tracer.start_as_current_span("round") as span:
            span.set_attribute("round.number", round_number)
            logger.info(f"[component:orchestrator] Round {round_number} starting")

            # Stage 0: fresh supply
            if self.config.rounds.generate_tasks:
                rounds = self.config.rounds
                with self.session_factory() as session:
                    TaskManager.generate_round_tasks(
                        session,
                        round_number,
                        count=rounds.tasks_per_round,
                        multiplier_range=(rounds.price_multiplier_min, rounds.price_multiplier_max),
                        rng=self.rng,
                    )

            # Loading the round's agent and task sets is the only failure that ends the round
            with self.session_factory() as session:
                agent_ids = [row.id for row in session.query(Agent.id).order_by(Agent.created_at, Agent.id)]
                # Tasks posted after this point wait for the next round
                task_ids = [t.id for t in TaskManager.open_tasks(session)]

            # Stage 1: lifecycle
            statuses = await self._lifecycle_sweep(agent_ids, round_number, summary)
            eligible = [a for a in agent_ids if statuses.get(a) in BIDDING_STATUSES]

            # Stage 2: bidding
            bidding = await self.bidding.run_bidding(eligible, round_number, nc=self.nc, task_ids=task_ids)
            summary.bids_placed = bidding.bids_placed

            # Stage 3: settlement
            settlements = await self._settle_open_tasks(task_ids, round_number, summary)

            # Stage 4: distribution and bookkeeping
            await self._distribute(eligible, bidding.outcomes, settlements, round_number, summary)

            # Stage 5: upkeep
            alive = [a for a in agent_ids if statuses.get(a) not in (None, AgentStatus.DEAD)]
            await self._charge_upkeep(alive, round_number, summary)

            # Stage 6: exceptions
            detected = self.triggers.detect_exceptions(eligible, round_number)
            summary.exceptions_detected = len(detected)
            for agent_id, trigger in detected:
                self._spawn(
                    self._consult_and_remember(self.triggers.handle_exception(agent_id, trigger, round_number), EXCEPTION),
                    f"exception:{agent_id}:{round_number}",
                )
                summary.advisor_invocations += 1

            # Stage 7: scheduled reviews
            flagged = {agent_id for agent_id, _ in detected}
            for agent_id in self.triggers.reviews_due([a for a in eligible if a not in flagged], round_number):
                self._spawn(
                    self._consult_and_remember(self.triggers.run_review(agent_id, round_number), REVIEW),
                    f"review:{agent_id}:{round_number}",
                )
                summary.reviews_dispatched += 1

            # Stage 8: snapshot
            summary.agent_states = self._agent_states()
            self._record_round(round_number, started_at, summary)

            set_span_attributes(
                span,
                round__bids=summary.bids_placed,
                round__completed=summary.tasks_completed,
                round__expired=summary.tasks_expired,
                round__revenue=summary.total_revenue,
            )

        logger.info(
            f"[component:orchestrator] Round {round_number} done: {summary.bids_placed} bids, "
            f"{summary.tasks_completed} completed, {summary.tasks_expired} expired, "
            f"revenue ${summary.total_revenue}, upkeep ${summary.living_costs_deducted}, "
            f"{summary.exceptions_detected} exceptions, {summary.reviews_dispatched} reviews"
        )
        await publish_event(
            self.nc,
            "system.round.completed",
            RoundCompleted(round_number=round_number, summary=summary.model_dump(mode="json", exclude={"agent_states"})),
        )
        return summary

    async def _lifecycle_sweep(self, agent_ids: list[str], round_number: int, summary: RoundSummary) -> dict:
        results = await asyncio.gather(
            *(self._classify_agent(agent_id, round_number) for agent_id in agent_ids), return_exceptions=True
        )
        statuses = {}
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"[component:orchestrator] Lifecycle check failed for {agent_id}: {result}")
                continue
            if result is None:
                continue
            old_status, new_status = result
            statuses[agent_id] = new_status
            if old_status != new_status:
                summary.lifecycle_changes += 1
        return statuses

    async def _classify_agent(self, agent_id: str, round_number: int) -> tuple[AgentStatus, AgentStatus] | None:
        from mercator.domain.events import LifecycleChanged, publish_event

        with self.session_factory() as session:
            agent = session.get(Agent, agent_id)
            if agent is None:
                return None
            old_status = agent.status
            new_status = classify_lifecycle(
                old_status, agent.balance, AgentManager.costs_for(agent), self.config.rounds.low_runway_rounds
            )
            if new_status == old_status:
                return old_status, new_status

            agent.status = new_status
            balance = to_money(agent.balance)
            session.add(
                AuditEvent(
                    event_type="lifecycle_change",
                    agent_id=agent_id,
                    round_number=round_number,
                    amount=balance,
                    details={"from": old_status.value, "to": new_status.value},
                )
            )
            session.commit()

        logger.info(f"[component:orchestrator] {agent_id}: {old_status.value} -> {new_status.value} (${balance})")
        await publish_event(
            self.nc,
            "system.agent.lifecycle_changed",
            LifecycleChanged(agent_id=agent_id, old_status=old_status.value, new_status=new_status.value, balance=balance),
        )
        return old_status, new_status

    async def _settle_open_tasks(
        self, task_ids: list[str], round_number: int, summary: RoundSummary
    ) -> dict[str, SettlementResult]:
        summary.tasks_processed = len(task_ids)

        results = await asyncio.gather(*(self._settle(task_id) for task_id in task_ids), return_exceptions=True)

        settlements = {}
        for task_id, result in zip(task_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"[component:orchestrator] Settlement failed for task {task_id}: {result}")
                try:
                    self._expire_task(task_id, round_number, f"settlement failed: {result}")
                    summary.tasks_expired += 1
                except Exception as e:
                    logger.opt(exception=e).error(f"[component:orchestrator] Could not expire task {task_id}")
                continue
            settlements[task_id] = result
            if result.status == SettlementStatus.SETTLED:
                summary.auctions_closed += 1
            elif result.status == SettlementStatus.EXPIRED:
                summary.tasks_expired += 1
        return settlements

    async def _settle(self, task_id: str) -> SettlementResult:
        with self.session_factory() as session:
            return await AuctionSettlement.close_auction(session, task_id, nc=self.nc)

    async def _distribute(
        self,
        agent_ids: list[str],
        outcomes: list[BidOutcome],
        settlements: dict[str, SettlementResult],
        round_number: int,
        summary: RoundSummary,
    ):
        by_agent = {o.agent_id: o for o in outcomes}
        results = await asyncio.gather(
            *(self._distribute_for_agent(a, by_agent.get(a), settlements, round_number) for a in agent_ids),
            return_exceptions=True,
        )
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"[component:orchestrator] Distribution failed for {agent_id}: {result}")
                continue
            if result.completed:
                summary.tasks_completed += 1
                summary.total_revenue += result.revenue
            if result.expired_task_id:
                summary.tasks_expired += 1

    async def _distribute_for_agent(
        self, agent_id: str, outcome: BidOutcome | None, settlements: dict[str, SettlementResult], round_number: int
    ) -> AgentRoundResult:
        from mercator.domain.events import TaskCompleted, publish_event

        result = AgentRoundResult(agent_id=agent_id)
        settlement = settlements.get(outcome.task_id) if outcome and outcome.placed else None
        won = bool(settlement and settlement.winner and settlement.winner.agent_id == agent_id)
        result.won = won

        distribution = None
        if won:
            try:
                with self.session_factory() as session:
                    distribution = self.economy.complete_task(session, settlement.task_id, rng=self.rng)
            except Exception as e:
                logger.error(f"[component:orchestrator] Completing task {settlement.task_id} failed: {e}")
                self._expire_task(settlement.task_id, round_number, str(e))
                result.expired_task_id = settlement.task_id

        with self.session_factory() as session:
            agent = session.get(Agent, agent_id)
            if agent is None:
                return result
            if settlement is not None and settlement.status == SettlementStatus.SETTLED:
                RuntimeStateManager.record_bid_result(session, agent, won, round_number)
            else:
                RuntimeStateManager.advance_round(session, agent, round_number)
            session.commit()

        if settlement is not None and settlement.status == SettlementStatus.SETTLED:
            feedback = MemoryJournal.bid_outcome(settlement, agent_id)
            if feedback is not None:
                self._remember(agent_id, BID_OUTCOME, round_number, feedback, task_id=settlement.task_id)

        if distribution is not None and distribution.completed:
            result.completed = True
            result.revenue = distribution.split.revenue
            self._remember(
                agent_id,
                TASK_EXECUTION,
                round_number,
                MemoryJournal.task_execution(distribution),
                task_id=distribution.task_id,
            )
            split = distribution.split
            await publish_event(
                self.nc,
                "system.economy.task_completed",
                TaskCompleted(
                    task_id=distribution.task_id,
                    agent_id=agent_id,
                    revenue=split.revenue,
                    net_profit=split.net_profit,
                    platform_cut=split.platform_cut,
                    investor_share=split.investor_share,
                    agent_share=split.agent_share,
                ),
            )
            if distribution.transfers:
                await EconomicEngine.settle_transfers(
                    self.session_factory, distribution.transfers, self.payments, round_number
                )
        return result

    def _expire_task(self, task_id: str, round_number: int, reason: str):
        with self.session_factory() as session:
            task = session.get(Task, task_id)
            if task is None or task.status == TaskStatus.COMPLETED:
                return
            task.status = TaskStatus.EXPIRED
            session.add(
                AuditEvent(
                    event_type="task_expired",
                    task_id=task_id,
                    agent_id=task.assigned_agent_id,
                    round_number=round_number,
                    details={"reason": reason},
                )
            )
            session.commit()

    async def _charge_upkeep(self, agent_ids: list[str], round_number: int, summary: RoundSummary):
        results = await asyncio.gather(
            *(self._upkeep_for_agent(agent_id, round_number) for agent_id in agent_ids), return_exceptions=True
        )
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"[component:orchestrator] Upkeep failed for {agent_id}: {result}")
                continue
            summary.living_costs_deducted += result

    async def _upkeep_for_agent(self, agent_id: str, round_number: int) -> Decimal:
        from mercator.domain.events import LivingCostCharged, publish_event

        with self.session_factory() as session:
            taken = self.economy.charge_upkeep(session, agent_id, round_number)
            balance = EconomicEngine.get_balance(session, agent_id) if taken > ZERO else None

        if taken > ZERO:
            await publish_event(
                self.nc,
                "system.economy.living_cost",
                LivingCostCharged(agent_id=agent_id, amount=taken, balance_after=balance),
            )
        return taken

    def _agent_states(self) -> list[dict]:
        with self.session_factory() as session:
            return [
                {
                    "id": agent.id,
                    "name": agent.name,
                    "type": agent.type.value,
                    "status": agent.status.value,
                    "balance": str(to_money(agent.balance)),
                    "reputation": round(agent.reputation, 4),
                }
                for agent in session.query(Agent).order_by(Agent.created_at, Agent.id)
            ]

    def _record_round(self, round_number: int, started_at, summary: RoundSummary):
        with self.session_factory() as session:
            record = session.get(RoundRecord, round_number) or RoundRecord(number=round_number)
            record.started_at = started_at
            record.completed_at = utc_now()
            record.summary = summary.model_dump(mode="json")
            session.add(record)
            session.commit()
