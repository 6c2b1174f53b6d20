from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from mercator.core.auction import AuctionSettlement, SettlementStatus
from mercator.core.bidding import BiddingService
from mercator.domain.models import AgentType, AuditEvent, Bid, BidStatus, Task, TaskStatus
from mercator.domain.tasks import TaskManager


@pytest.fixture
def task_id(session):
    return TaskManager.post_task(session, AgentType.CATALOG, Decimal("0.1"), round_number=1).id


@pytest.mark.asyncio
async def test_best_score_wins_not_lowest_price(session, make_agent, task_id):
    """Reputation can outweigh a slightly lower price."""
    a = make_agent("a", reputation=5.0)
    b = make_agent("b", reputation=3.0)
    BiddingService.place_bid(session, a, task_id, Decimal("0.07"), round_number=1)
    BiddingService.place_bid(session, b, task_id, Decimal("0.065"), round_number=1)

    result = await AuctionSettlement.close_auction(session, task_id)

    assert result.status == SettlementStatus.SETTLED
    assert result.winner.agent_id == b
    assert result.bid_count == 2
    assert result.score_gap(a) == pytest.approx(1630.77 - 1571.43, abs=0.01)

    task = session.get(Task, task_id)
    assert task.status == TaskStatus.ASSIGNED
    assert task.assigned_agent_id == b
    statuses = {bid.agent_id: bid.status for bid in session.query(Bid).filter_by(task_id=task_id)}
    assert statuses == {a: BidStatus.LOST, b: BidStatus.WON}
    assert session.query(Bid).filter_by(agent_id=b).one().score == pytest.approx(1630.77, abs=0.01)


@pytest.mark.asyncio
async def test_equal_scores_go_to_earliest_submission(session, make_agent, task_id):
    first = make_agent("first")
    second = make_agent("second")
    late = BiddingService.place_bid(session, second, task_id, Decimal("0.08"), round_number=1)
    early = BiddingService.place_bid(session, first, task_id, Decimal("0.08"), round_number=1)
    now = datetime(2026, 1, 1, 12, 0, 0)
    early.created_at = now
    late.created_at = now + timedelta(seconds=1)
    session.commit()

    result = await AuctionSettlement.close_auction(session, task_id)

    assert result.winner.agent_id == first


def test_equal_scores_and_times_go_to_lowest_bid_id(session, make_agent, task_id):
    agents = [make_agent(f"agent-{i}") for i in range(3)]
    bids = [BiddingService.place_bid(session, a, task_id, Decimal("0.08"), round_number=1) for a in agents]
    stamp = datetime(2026, 1, 1)
    for bid in bids:
        bid.created_at = stamp
    session.commit()

    ranked = AuctionSettlement.ranked_bids(session, task_id)

    assert [r.bid_id for r in ranked] == sorted(b.id for b in bids)
    assert [r.rank for r in ranked] == [1, 2, 3]


@pytest.mark.asyncio
async def test_task_without_bids_expires(session, task_id):
    nc = AsyncMock()

    result = await AuctionSettlement.close_auction(session, task_id, nc=nc)

    assert result.status == SettlementStatus.EXPIRED
    assert session.get(Task, task_id).status == TaskStatus.EXPIRED
    assert session.query(AuditEvent).filter_by(task_id=task_id, event_type="task_expired").count() == 1
    assert nc.publish.await_args.args[0] == "system.auction.expired"


@pytest.mark.asyncio
async def test_settlement_is_idempotent(session, make_agent, task_id):
    agent = make_agent()
    BiddingService.place_bid(session, agent, task_id, Decimal("0.08"), round_number=1)
    nc = AsyncMock()

    first = await AuctionSettlement.close_auction(session, task_id, nc=nc)
    second = await AuctionSettlement.close_auction(session, task_id, nc=nc)

    assert first.status == SettlementStatus.SETTLED
    assert second.status == SettlementStatus.SKIPPED
    assert session.query(Bid).filter_by(task_id=task_id, status=BidStatus.WON).count() == 1
    assert nc.publish.await_count == 1
    assert nc.publish.await_args.args[0] == "system.auction.closed"


@pytest.mark.asyncio
async def test_unknown_task(session):
    result = await AuctionSettlement.close_auction(session, "missing")
    assert result.status == SettlementStatus.NOT_FOUND
