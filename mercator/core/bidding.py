import asyncio
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mercator.core.config import EconomyConfig
from mercator.core.exceptions import NotFoundError
from mercator.domain.agents import AgentManager
from mercator.domain.autopilot import BidAction, evaluate_bid
from mercator.domain.economy import EconomicEngine
from mercator.domain.models import BIDDING_STATUSES, Agent, AgentType, Bid, BidStatus, Task, TaskStatus
from mercator.domain.money import ZERO, to_money
from mercator.domain.state import RuntimeStateManager


class TaskSnapshot(BaseModel):
    id: str
    type: AgentType
    max_bid: Decimal


class BidOutcome(BaseModel):
    agent_id: str
    placed: bool = False
    task_id: str | None = None
    bid_id: str | None = None
    amount: Decimal | None = None
    reasoning: str = ""


class BiddingResult(BaseModel):
    outcomes: list[BidOutcome] = Field(default_factory=list)
    submission_costs: Decimal = ZERO

    @property
    def bids_placed(self) -> int:
        return sum(1 for o in self.outcomes if o.placed)


class BiddingService:
    def __init__(self, session_factory, config: EconomyConfig | None = None):
        self.session_factory = session_factory
        self.config = config or EconomyConfig()

    @staticmethod
    def place_bid(session: Session, agent_id: str, task_id: str, amount, round_number: int, reasoning: str = "") -> Bid:
        agent = session.query(Agent).filter_by(id=agent_id).first()
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found")

        task = session.query(Task).filter_by(id=task_id).first()
        if not task:
            raise NotFoundError(f"Task {task_id} not found")
        if task.status != TaskStatus.OPEN:
            raise ValueError("Task is not open for bidding")
        if task.type != agent.type:
            raise ValueError(f"{agent.type.value} agents cannot bid on {task.type.value} tasks")

        amount = to_money(amount)
        if amount <= ZERO or amount > to_money(task.max_bid):
            raise ValueError(f"Bid ${amount} outside (0, ${task.max_bid}]")

        if session.query(Bid).filter_by(agent_id=agent_id, round_number=round_number).first():
            raise ValueError(f"Agent {agent_id} already bid in round {round_number}")
        if session.query(Bid).filter_by(agent_id=agent_id, task_id=task_id).first():
            raise ValueError(f"Agent {agent_id} already bid on task {task_id}")

        bid = Bid(
            task_id=task_id,
            agent_id=agent_id,
            amount=amount,
            status=BidStatus.PENDING,
            round_number=round_number,
            reasoning=reasoning,
        )
        session.add(bid)
        session.commit()
        return bid

    @staticmethod
    def get_history(session: Session, agent_id: str, limit: int = 50) -> list[Bid]:
        return session.query(Bid).filter_by(agent_id=agent_id).order_by(Bid.created_at.desc()).limit(limit).all()

    async def run_bidding(
        self, agent_ids: list[str], round_number: int, nc=None, task_ids: list[str] | None = None
    ) -> BiddingResult:
        """
        Every eligible agent bids at most once: on the first open task of its type that
        the autopilot is willing to price. Submission costs are then debited in one pass.

        With task_ids, only those tasks (if still open) are offered.
        """
        with self.session_factory() as session:
            query = session.query(Task).filter_by(status=TaskStatus.OPEN)
            if task_ids is not None:
                query = query.filter(Task.id.in_(task_ids))
            tasks = [
                TaskSnapshot(id=t.id, type=t.type, max_bid=t.max_bid)
                for t in query.order_by(Task.created_at, Task.id)
            ]

        if not tasks:
            return BiddingResult(outcomes=[BidOutcome(agent_id=a, reasoning="No open tasks") for a in agent_ids])

        results = await asyncio.gather(
            *(self._bid_for_agent(agent_id, tasks, round_number, nc) for agent_id in agent_ids),
            return_exceptions=True,
        )

        outcomes = []
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"[component:bidding] Bidding failed for agent {agent_id}: {result}")
                outcomes.append(BidOutcome(agent_id=agent_id, reasoning=f"error: {result}"))
            else:
                outcomes.append(result)

        submission_costs = self._charge_submissions([o for o in outcomes if o.placed], round_number)
        result = BiddingResult(outcomes=outcomes, submission_costs=submission_costs)
        logger.info(f"[component:bidding] Round {round_number}: {result.bids_placed} bids from {len(agent_ids)} agents")
        return result

    async def _bid_for_agent(self, agent_id: str, tasks: list[TaskSnapshot], round_number: int, nc=None) -> BidOutcome:
        from mercator.domain.events import BidPlaced, publish_event

        with self.session_factory() as session:
            agent = session.get(Agent, agent_id)
            if not agent or agent.status not in BIDDING_STATUSES:
                return BidOutcome(agent_id=agent_id, reasoning="Agent not eligible to bid")
            if session.query(Bid).filter_by(agent_id=agent_id, round_number=round_number).first():
                return BidOutcome(agent_id=agent_id, reasoning="Already bid this round")

            policy = AgentManager.current_policy(session, agent_id)
            costs = AgentManager.costs_for(agent)
            already_bid = {row.task_id for row in session.query(Bid.task_id).filter_by(agent_id=agent_id)}

            outcome = BidOutcome(agent_id=agent_id, reasoning=f"No open {agent.type.value} tasks")
            for task in tasks:
                if task.type != agent.type or task.id in already_bid:
                    continue
                decision = evaluate_bid(task, policy, costs, agent.balance, self.config.living_cost_per_round)
                if decision.action == BidAction.SKIP:
                    outcome = BidOutcome(agent_id=agent_id, task_id=task.id, reasoning=decision.reasoning)
                    continue

                bid = self.place_bid(session, agent_id, task.id, decision.amount, round_number, decision.reasoning)
                outcome = BidOutcome(
                    agent_id=agent_id,
                    placed=True,
                    task_id=task.id,
                    bid_id=bid.id,
                    amount=decision.amount,
                    reasoning=decision.reasoning,
                )
                break

        if outcome.placed:
            logger.debug(f"[component:bidding] {agent_id} bid ${outcome.amount} on {outcome.task_id}: {outcome.reasoning}")
            await publish_event(
                nc,
                "system.bid.placed",
                BidPlaced(agent_id=agent_id, task_id=outcome.task_id, amount=outcome.amount, round_number=round_number),
            )
        return outcome

    def _charge_submissions(self, placed: list[BidOutcome], round_number: int) -> Decimal:
        if not placed:
            return ZERO

        total = ZERO
        with self.session_factory() as session:
            for outcome in placed:
                agent = session.get(Agent, outcome.agent_id)
                if agent is None:
                    continue
                cost = AgentManager.costs_for(agent).per_bid.bid_submission
                taken = EconomicEngine.debit(session, agent, cost, "bid_submission", round_number, outcome.task_id)
                RuntimeStateManager.add_cost(RuntimeStateManager.get_or_create(session, agent), taken)
                total += taken
            session.commit()
        return total
