import json
import random
from decimal import Decimal

import nats
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from mercator.core.config import EconomyConfig
from mercator.core.exceptions import EscrowError, NotFoundError, PaymentError
from mercator.core.observability import setup_tracing
from mercator.domain.agents import AgentManager
from mercator.domain.autopilot import round_overhead, task_cost
from mercator.domain.contracts import PaymentReceipt, Transfer
from mercator.domain.models import (
    Agent,
    AuditEvent,
    Bid,
    EscrowBalance,
    Task,
    TaskStatus,
    TokenHolding,
    utc_now,
)
from mercator.domain.money import ZERO, bps, round_down, to_money
from mercator.domain.state import RuntimeStateManager
from mercator.infra.database import SessionLocal

tracer = setup_tracing("economy")


class ProfitSplit(BaseModel):
    revenue: Decimal
    operational_cost: Decimal
    gross_profit: Decimal
    overhead: Decimal
    net_profit: Decimal
    platform_cut: Decimal
    investor_share: Decimal
    agent_share: Decimal


class HolderCredit(BaseModel):
    holder_wallet: str
    amount: Decimal


class DistributionResult(BaseModel):
    task_id: str
    agent_id: str | None = None
    completed: bool = False
    reason: str = ""
    split: ProfitSplit | None = None
    balance_credit: Decimal = ZERO
    holder_credits: list[HolderCredit] = Field(default_factory=list)
    reputation_before: float | None = None
    reputation_after: float | None = None
    transfers: list[Transfer] = Field(default_factory=list)


def compute_split(
    revenue: Decimal,
    operational_cost: Decimal,
    overhead: Decimal,
    investor_share_bps: int,
    platform_fee_bps: int,
) -> ProfitSplit:
    """
    Profit waterfall for one completed task.

    gross = revenue - operational cost; net = gross - overhead. The platform takes its fee
    only from a positive net, investors take their basis points of what is left, and the
    agent keeps the exact remainder, so platform + investors + agent == net with every
    rounding remainder landing on the agent.
    """
    revenue = to_money(revenue)
    operational_cost = to_money(operational_cost)
    overhead = to_money(overhead)

    gross = revenue - operational_cost
    net = gross - overhead

    platform_cut = bps(net, platform_fee_bps) if net > ZERO else ZERO
    remaining = net - platform_cut
    investor_share = bps(remaining, investor_share_bps) if remaining > ZERO else ZERO
    agent_share = net - platform_cut - investor_share

    return ProfitSplit(
        revenue=revenue,
        operational_cost=operational_cost,
        gross_profit=gross,
        overhead=overhead,
        net_profit=net,
        platform_cut=platform_cut,
        investor_share=investor_share,
        agent_share=agent_share,
    )


def allocate_to_holders(investor_share: Decimal, holdings: list[tuple[str, Decimal]]) -> list[HolderCredit]:
    """Pro-rata split by token balance, each credit rounded down."""
    total_tokens = sum((Decimal(tokens) for _, tokens in holdings), ZERO)
    if investor_share <= ZERO or total_tokens <= ZERO:
        return []

    credits = []
    for wallet, tokens in holdings:
        amount = round_down(investor_share * Decimal(tokens) / total_tokens)
        if amount > ZERO:
            credits.append(HolderCredit(holder_wallet=wallet, amount=amount))
    return credits


class EconomicEngine:
    """
    Engine for agent money: the profit waterfall on task completion, per-round upkeep,
    investor escrow and the audit trail behind every balance change.
    """

    def __init__(self, config: EconomyConfig | None = None):
        self.config = config or EconomyConfig()

    # ------------------------------------------------------------------
    # Ledger primitives
    # ------------------------------------------------------------------

    @staticmethod
    def debit(
        session: Session,
        agent: Agent,
        amount: Decimal,
        event_type: str,
        round_number: int | None = None,
        task_id: str | None = None,
        details: dict | None = None,
    ) -> Decimal:
        """
        Take up to ``amount`` from the agent's balance. The balance never goes below zero;
        the amount actually taken is returned and audited.
        """
        amount = to_money(amount)
        if amount < ZERO:
            raise ValueError("Debit amount must not be negative")

        balance = to_money(agent.balance)
        taken = min(amount, balance)
        agent.balance = balance - taken

        session.add(
            AuditEvent(
                event_type=event_type,
                agent_id=agent.id,
                task_id=task_id,
                round_number=round_number,
                amount=taken,
                details={**(details or {}), "requested": str(amount), "balance_after": str(agent.balance)},
            )
        )
        if taken < amount:
            logger.warning(
                f"[component:economy] {event_type} for agent {agent.id} floored: requested ${amount}, took ${taken}"
            )
        return taken

    @staticmethod
    def get_balance(session: Session, agent_id: str) -> Decimal:
        agent = session.query(Agent).filter(Agent.id == agent_id).first()
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found")
        return to_money(agent.balance)

    @staticmethod
    def get_history(session: Session, agent_id: str, limit: int = 100) -> list[AuditEvent]:
        return (
            session.query(AuditEvent)
            .filter(AuditEvent.agent_id == agent_id)
            .order_by(AuditEvent.created_at.desc())
            .limit(limit)
            .all()
        )

    def nudge_reputation(self, reputation: float, rng: random.Random | None = None) -> float:
        rng = rng or random
        jitter = self.config.reputation_jitter
        delta = rng.uniform(-jitter, jitter) * (reputation or 0.0)
        bounded = min(max((reputation or 0.0) + delta, self.config.reputation_floor), self.config.reputation_ceiling)
        return round(bounded, 3)

    # ------------------------------------------------------------------
    # Task completion
    # ------------------------------------------------------------------

    def complete_task(self, session: Session, task_id: str, rng: random.Random | None = None) -> DistributionResult:
        """
        Mark an assigned task completed and run the profit waterfall for its winner.

        Returns the ledger-side result, including the transfers the payment rail should
        mirror. Tasks that are missing or not ASSIGNED are left untouched.
        """
        task = session.query(Task).filter(Task.id == task_id).with_for_update().first()
        if not task:
            return DistributionResult(task_id=task_id, reason="Task not found")
        if task.status != TaskStatus.ASSIGNED:
            return DistributionResult(task_id=task_id, reason=f"Task is {task.status.value}, not assigned")

        bid = session.get(Bid, task.winning_bid_id) if task.winning_bid_id else None
        agent = session.query(Agent).filter(Agent.id == task.assigned_agent_id).with_for_update().first()
        if not bid or not agent:
            return DistributionResult(task_id=task_id, reason="Winning bid or agent not found")

        costs = AgentManager.costs_for(agent)
        split = compute_split(
            revenue=bid.amount,
            operational_cost=task_cost(costs),
            overhead=round_overhead(costs, self.config.living_cost_per_round, self.config.brain_wakeup_rate),
            investor_share_bps=agent.investor_share_bps if agent.investor_share_bps is not None else self.config.default_investor_share_bps,
            platform_fee_bps=self.config.platform_fee_bps,
        )

        holdings = [
            (h.holder_wallet, h.token_balance)
            for h in session.query(TokenHolding).filter(TokenHolding.agent_id == agent.id, TokenHolding.token_balance > 0)
        ]
        credits = allocate_to_holders(split.investor_share, holdings)
        credited = sum((c.amount for c in credits), ZERO)
        # Pro-rata dust, or the whole share when nobody holds tokens, stays with the agent
        split = split.model_copy(
            update={
                "investor_share": credited,
                "agent_share": split.agent_share + (split.investor_share - credited),
            }
        )

        for credit in credits:
            self._deposit_escrow(session, agent.id, credit)

        # Overhead is only an estimate used for the split; the agent is charged for it
        # separately by bid-submission debits and upkeep.
        balance_credit = split.gross_profit - split.platform_cut - split.investor_share
        if balance_credit >= ZERO:
            agent.balance = to_money(agent.balance) + balance_credit
        else:
            balance_credit = -self.debit(session, agent, -balance_credit, "task_loss", task.round_number, task.id)

        reputation_before = agent.reputation
        agent.reputation = self.nudge_reputation(agent.reputation, rng)

        task.status = TaskStatus.COMPLETED
        task.completed_at = utc_now()

        state = RuntimeStateManager.get_or_create(session, agent)
        RuntimeStateManager.add_revenue(state, split.revenue, split.operational_cost)

        session.add(
            AuditEvent(
                event_type="task_completed",
                agent_id=agent.id,
                task_id=task.id,
                round_number=task.round_number,
                amount=balance_credit,
                details={k: str(v) for k, v in split.model_dump().items()},
            )
        )
        transfers = []
        wallet = agent.wallet_address or f"agent:{agent.id}"
        if split.platform_cut > ZERO:
            session.add(
                AuditEvent(
                    event_type="platform_fee",
                    agent_id=agent.id,
                    task_id=task.id,
                    round_number=task.round_number,
                    amount=split.platform_cut,
                    details={"fee_bps": self.config.platform_fee_bps},
                )
            )
            transfers.append(
                Transfer(
                    kind="platform_fee",
                    from_wallet=wallet,
                    to_wallet=self.config.platform_wallet,
                    amount=split.platform_cut,
                    agent_id=agent.id,
                    task_id=task.id,
                )
            )
        if split.investor_share > ZERO:
            session.add(
                AuditEvent(
                    event_type="escrow_deposit",
                    agent_id=agent.id,
                    task_id=task.id,
                    round_number=task.round_number,
                    amount=split.investor_share,
                    details={"holder_count": len(credits), "investor_share_bps": agent.investor_share_bps},
                )
            )
            transfers.append(
                Transfer(
                    kind="escrow_deposit",
                    from_wallet=wallet,
                    to_wallet=self.config.escrow_wallet,
                    amount=split.investor_share,
                    agent_id=agent.id,
                    task_id=task.id,
                )
            )

        session.commit()
        logger.info(
            f"[component:economy] Task {task.id} completed by {agent.id}: revenue ${split.revenue}, "
            f"net ${split.net_profit}, platform ${split.platform_cut}, investors ${split.investor_share}, "
            f"agent ${split.agent_share}"
        )
        return DistributionResult(
            task_id=task.id,
            agent_id=agent.id,
            completed=True,
            split=split,
            balance_credit=balance_credit,
            holder_credits=credits,
            reputation_before=reputation_before,
            reputation_after=agent.reputation,
            transfers=transfers,
        )

    @staticmethod
    def _deposit_escrow(session: Session, agent_id: str, credit: HolderCredit):
        escrow = (
            session.query(EscrowBalance)
            .filter_by(agent_id=agent_id, holder_wallet=credit.holder_wallet)
            .with_for_update()
            .first()
        )
        if escrow is None:
            escrow = EscrowBalance(agent_id=agent_id, holder_wallet=credit.holder_wallet, total_earned=ZERO, total_claimed=ZERO)
            session.add(escrow)
        escrow.total_earned = to_money(escrow.total_earned) + credit.amount
        escrow.last_deposit_at = utc_now()

    # ------------------------------------------------------------------
    # Upkeep
    # ------------------------------------------------------------------

    def charge_upkeep(self, session: Session, agent_id: str, round_number: int, amount: Decimal | None = None) -> Decimal:
        """Flat per-round living cost. Agents already at zero are skipped."""
        agent = session.query(Agent).filter(Agent.id == agent_id).with_for_update().first()
        if not agent:
            logger.warning(f"[component:economy] Upkeep skipped, agent {agent_id} not found")
            return ZERO
        if to_money(agent.balance) <= ZERO:
            return ZERO

        amount = to_money(self.config.living_cost_per_round if amount is None else amount)
        taken = self.debit(session, agent, amount, "living_cost", round_number=round_number)
        RuntimeStateManager.add_cost(RuntimeStateManager.get_or_create(session, agent), taken)
        session.commit()
        return taken

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    @staticmethod
    def escrow_balances(session: Session, agent_id: str) -> list[EscrowBalance]:
        return session.query(EscrowBalance).filter_by(agent_id=agent_id).all()

    def claim_escrow(self, session: Session, agent_id: str, holder_wallet: str) -> Transfer:
        escrow = (
            session.query(EscrowBalance)
            .filter_by(agent_id=agent_id, holder_wallet=holder_wallet)
            .with_for_update()
            .first()
        )
        available = to_money(escrow.available) if escrow else ZERO
        if available <= ZERO:
            raise EscrowError("No dividends available to claim")

        escrow.total_claimed = to_money(escrow.total_claimed) + available
        escrow.last_claim_at = utc_now()
        session.add(
            AuditEvent(
                event_type="escrow_claim",
                agent_id=agent_id,
                amount=available,
                details={"holder_wallet": holder_wallet},
            )
        )
        session.commit()
        logger.info(f"[component:economy] {holder_wallet} claimed ${available} of escrow from agent {agent_id}")
        return Transfer(
            kind="escrow_claim",
            from_wallet=self.config.escrow_wallet,
            to_wallet=holder_wallet,
            amount=available,
            agent_id=agent_id,
        )

    # ------------------------------------------------------------------
    # Payment rail
    # ------------------------------------------------------------------

    @staticmethod
    async def settle_transfers(session_factory, transfers: list[Transfer], gateway, round_number: int | None = None) -> list[PaymentReceipt]:
        """
        Mirror already-committed ledger transfers on the payment rail.

        The ledger is authoritative: an unsettled payment is recorded as
        ``payment_pending`` (no tx hash) for later reconciliation, never rolled back.
        """
        receipts = []
        for transfer in transfers:
            try:
                receipt = await gateway.pay(transfer.from_wallet, transfer.to_wallet, transfer.amount)
            except PaymentError as e:
                receipt = PaymentReceipt(settled=False, error=str(e))
            receipts.append(receipt)

            with session_factory() as session:
                session.add(
                    AuditEvent(
                        event_type="payment_settled" if receipt.settled else "payment_pending",
                        agent_id=transfer.agent_id,
                        task_id=transfer.task_id,
                        round_number=round_number,
                        amount=transfer.amount,
                        details={
                            "kind": transfer.kind,
                            "from_wallet": transfer.from_wallet,
                            "to_wallet": transfer.to_wallet,
                            "tx_hash": receipt.tx_hash,
                            "error": receipt.error,
                        },
                    )
                )
                session.commit()

            if not receipt.settled:
                logger.warning(
                    f"[component:economy] {transfer.kind} of ${transfer.amount} for agent {transfer.agent_id} "
                    f"not settled on rail: {receipt.error or 'pending'}"
                )
        return receipts

    # ------------------------------------------------------------------
    # NATS
    # ------------------------------------------------------------------

    async def run_nats(self, nats_url: str = "nats://localhost:4222", session_factory=SessionLocal):
        nc = await nats.connect(nats_url, connect_timeout=2)

        async def balance_handler(msg):
            with tracer.start_as_current_span("balance_handler") as span:
                agent_id = msg.subject.split(".")[-1]
                span.set_attribute("agent_id", agent_id)

                with session_factory() as session:
                    try:
                        balance = self.get_balance(session, agent_id)
                        response = {"agent_id": agent_id, "balance": str(balance)}
                    except NotFoundError as e:
                        span.record_exception(e)
                        response = {"error": str(e)}
                await msg.respond(json.dumps(response).encode())

        await nc.subscribe("economy.balance.*", cb=balance_handler)
        return nc
