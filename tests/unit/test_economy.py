import random
from decimal import Decimal

import pytest

from mercator.core.exceptions import EscrowError, NotFoundError
from mercator.domain.contracts import PaymentReceipt, Transfer
from mercator.domain.economy import EconomicEngine, allocate_to_holders, compute_split
from mercator.domain.models import (
    Agent,
    AgentType,
    AuditEvent,
    Bid,
    BidStatus,
    EscrowBalance,
    Task,
    TaskStatus,
    TokenHolding,
)
from mercator.infra.payments import LedgerOnlyGateway


def assigned_task(session, agent_id, amount, round_number=1):
    task = Task(type=AgentType.CATALOG, max_bid=Decimal("0.2"), status=TaskStatus.ASSIGNED, round_number=round_number)
    session.add(task)
    session.flush()
    bid = Bid(task_id=task.id, agent_id=agent_id, amount=Decimal(amount), status=BidStatus.WON, round_number=round_number)
    session.add(bid)
    session.flush()
    task.assigned_agent_id = agent_id
    task.winning_bid_id = bid.id
    session.commit()
    return task.id


# ---------------------------------------------------------------------------
# Waterfall arithmetic
# ---------------------------------------------------------------------------


def test_split_parts_sum_to_net():
    split = compute_split(Decimal("0.1"), Decimal("0.057"), Decimal("0.0063"), 7500, 1000)

    assert split.gross_profit == Decimal("0.043")
    assert split.net_profit == Decimal("0.0367")
    assert split.platform_cut == Decimal("0.00367")
    assert split.investor_share == Decimal("0.024772")
    assert split.agent_share == Decimal("0.008258")
    assert split.platform_cut + split.investor_share + split.agent_share == split.net_profit


@pytest.mark.parametrize("revenue", ["0.058", "0.0633", "0.071111", "0.5", "1.234567"])
@pytest.mark.parametrize("investor_bps", [0, 3333, 7500, 10000])
def test_split_conserves_net_under_rounding(revenue, investor_bps):
    split = compute_split(Decimal(revenue), Decimal("0.057"), Decimal("0.0063"), investor_bps, 1000)
    assert split.platform_cut + split.investor_share + split.agent_share == split.net_profit


def test_loss_takes_no_fees():
    split = compute_split(Decimal("0.05"), Decimal("0.057"), Decimal("0.0063"), 7500, 1000)

    assert split.net_profit < 0
    assert split.platform_cut == 0
    assert split.investor_share == 0
    assert split.agent_share == split.net_profit


def test_holder_allocation_rounds_down():
    credits = allocate_to_holders(Decimal("0.024772"), [("w1", Decimal(1)), ("w2", Decimal(2))])

    assert [(c.holder_wallet, c.amount) for c in credits] == [("w1", Decimal("0.008257")), ("w2", Decimal("0.016514"))]
    assert sum(c.amount for c in credits) <= Decimal("0.024772")


def test_holder_allocation_without_tokens():
    assert allocate_to_holders(Decimal("1"), []) == []
    assert allocate_to_holders(Decimal("1"), [("w1", Decimal(0))]) == []


# ---------------------------------------------------------------------------
# Task completion
# ---------------------------------------------------------------------------


def test_complete_task_without_holders_keeps_investor_share(session, make_agent):
    agent_id = make_agent(balance="1.0")
    task_id = assigned_task(session, agent_id, "0.1")

    result = EconomicEngine().complete_task(session, task_id, rng=random.Random(3))

    assert result.completed
    assert result.split.investor_share == 0
    assert result.split.agent_share == Decimal("0.03303")
    # gross - platform fee; overhead is charged separately by debits
    assert result.balance_credit == Decimal("0.03933")

    agent = session.get(Agent, agent_id)
    assert agent.balance == Decimal("1.03933")
    assert 3.2 <= agent.reputation <= 4.8
    assert session.get(Task, task_id).status == TaskStatus.COMPLETED
    assert [t.kind for t in result.transfers] == ["platform_fee"]


def test_complete_task_credits_holders_and_gives_dust_to_agent(session, make_agent):
    agent_id = make_agent(balance="1.0", wallet_address="0xagent")
    session.add_all(
        [
            TokenHolding(agent_id=agent_id, holder_wallet="w1", token_balance=1),
            TokenHolding(agent_id=agent_id, holder_wallet="w2", token_balance=2),
        ]
    )
    session.commit()
    task_id = assigned_task(session, agent_id, "0.1")

    result = EconomicEngine().complete_task(session, task_id, rng=random.Random(3))

    assert result.split.investor_share == Decimal("0.024771")
    assert result.split.agent_share == Decimal("0.008259")
    assert result.split.platform_cut + result.split.investor_share + result.split.agent_share == result.split.net_profit
    assert result.balance_credit == Decimal("0.014559")

    escrow = {e.holder_wallet: e for e in EconomicEngine.escrow_balances(session, agent_id)}
    assert escrow["w1"].total_earned == Decimal("0.008257")
    assert escrow["w2"].total_earned == Decimal("0.016514")

    transfers = {t.kind: t for t in result.transfers}
    assert transfers["escrow_deposit"].from_wallet == "0xagent"
    assert transfers["escrow_deposit"].amount == Decimal("0.024771")


def test_complete_task_at_a_loss_debits_agent(session, make_agent):
    agent_id = make_agent(balance="1.0")
    task_id = assigned_task(session, agent_id, "0.05")

    result = EconomicEngine().complete_task(session, task_id, rng=random.Random(3))

    assert result.completed
    assert result.balance_credit == Decimal("-0.007")
    assert session.get(Agent, agent_id).balance == Decimal("0.993")
    assert result.transfers == []


def test_complete_task_ignores_unassigned_tasks(session, make_agent):
    agent_id = make_agent()
    task_id = assigned_task(session, agent_id, "0.1")
    engine = EconomicEngine()

    assert engine.complete_task(session, task_id).completed
    second = engine.complete_task(session, task_id)

    assert not second.completed
    assert "completed" in second.reason
    assert engine.complete_task(session, "missing").reason == "Task not found"


# ---------------------------------------------------------------------------
# Upkeep and debits
# ---------------------------------------------------------------------------


def test_upkeep_deducts_living_cost(session, make_agent):
    agent_id = make_agent(balance="0.05")

    taken = EconomicEngine().charge_upkeep(session, agent_id, round_number=1)

    assert taken == Decimal("0.005")
    assert EconomicEngine.get_balance(session, agent_id) == Decimal("0.045")
    event = session.query(AuditEvent).filter_by(agent_id=agent_id, event_type="living_cost").one()
    assert event.amount == Decimal("0.005")


def test_upkeep_floors_at_zero(session, make_agent):
    agent_id = make_agent(balance="0.003")

    taken = EconomicEngine().charge_upkeep(session, agent_id, round_number=1)

    assert taken == Decimal("0.003")
    assert EconomicEngine.get_balance(session, agent_id) == 0
    # Nothing left to charge
    assert EconomicEngine().charge_upkeep(session, agent_id, round_number=2) == 0


def test_upkeep_for_missing_agent_is_a_no_op(session):
    assert EconomicEngine().charge_upkeep(session, "ghost", round_number=1) == 0


def test_debit_rejects_negative_amounts(session, make_agent):
    agent = session.get(Agent, make_agent())
    with pytest.raises(ValueError):
        EconomicEngine.debit(session, agent, Decimal("-1"), "oops")


def test_get_balance_not_found(session):
    with pytest.raises(NotFoundError):
        EconomicEngine.get_balance(session, "ghost")


# ---------------------------------------------------------------------------
# Escrow and payments
# ---------------------------------------------------------------------------


def test_claim_escrow(session, make_agent):
    agent_id = make_agent()
    session.add(EscrowBalance(agent_id=agent_id, holder_wallet="w1", total_earned=Decimal("0.5"), total_claimed=Decimal("0.1")))
    session.commit()

    transfer = EconomicEngine().claim_escrow(session, agent_id, "w1")

    assert transfer.amount == Decimal("0.4")
    assert transfer.to_wallet == "w1"
    escrow = session.query(EscrowBalance).filter_by(agent_id=agent_id, holder_wallet="w1").one()
    assert escrow.available == 0

    with pytest.raises(EscrowError, match="No dividends available"):
        EconomicEngine().claim_escrow(session, agent_id, "w1")


def test_claim_escrow_unknown_holder(session, make_agent):
    with pytest.raises(EscrowError):
        EconomicEngine().claim_escrow(session, make_agent(), "nobody")


@pytest.mark.asyncio
async def test_unsettled_payments_are_recorded_as_pending(session_factory, make_agent):
    agent_id = make_agent()
    transfer = Transfer(kind="platform_fee", from_wallet="a", to_wallet="platform", amount=Decimal("0.01"), agent_id=agent_id)

    receipts = await EconomicEngine.settle_transfers(session_factory, [transfer], LedgerOnlyGateway(), round_number=4)

    assert receipts == [PaymentReceipt(settled=False, error="payment rail disabled")]
    with session_factory() as db:
        event = db.query(AuditEvent).filter_by(agent_id=agent_id, event_type="payment_pending").one()
        assert event.round_number == 4
        assert event.details["tx_hash"] is None


@pytest.mark.asyncio
async def test_settled_payments_keep_the_tx_hash(session_factory, make_agent):
    agent_id = make_agent()

    class Rail:
        async def pay(self, from_wallet, to_wallet, amount):
            return PaymentReceipt(settled=True, tx_hash="0xfeed")

    transfer = Transfer(kind="escrow_claim", from_wallet="escrow", to_wallet="w1", amount=Decimal("0.2"), agent_id=agent_id)
    await EconomicEngine.settle_transfers(session_factory, [transfer], Rail())

    with session_factory() as db:
        event = db.query(AuditEvent).filter_by(agent_id=agent_id, event_type="payment_settled").one()
        assert event.details["tx_hash"] == "0xfeed"
