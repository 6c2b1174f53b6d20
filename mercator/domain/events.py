from datetime import UTC, datetime
from decimal import Decimal

from loguru import logger
from pydantic import BaseModel, Field

from mercator.core.observability import inject_context


def utc_now():
    return datetime.now(UTC)


class SystemEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)


async def publish_event(nc, subject: str, event: SystemEvent):
    """
    Publish an event on NATS with the current trace context. No client, no-op.

    Events describe state that is already committed, so a transport failure is
    logged and dropped instead of failing the caller's unit of work.
    """
    if not nc:
        return
    headers = {}
    inject_context(headers)
    try:
        await nc.publish(subject, event.model_dump_json().encode(), headers=headers)
    except Exception as e:
        logger.opt(exception=e).warning(f"[component:events] Failed to publish {subject}: {e}")


# Market Events
class BidPlaced(SystemEvent):
    agent_id: str
    task_id: str
    amount: Decimal
    round_number: int


class AuctionClosed(SystemEvent):
    task_id: str
    winner_agent_id: str
    winning_bid_id: str
    amount: Decimal
    score: float
    bid_count: int


class AuctionExpired(SystemEvent):
    task_id: str
    reason: str


# Economy Events
class TaskCompleted(SystemEvent):
    task_id: str
    agent_id: str
    revenue: Decimal
    net_profit: Decimal
    platform_cut: Decimal
    investor_share: Decimal
    agent_share: Decimal


class LivingCostCharged(SystemEvent):
    agent_id: str
    amount: Decimal
    balance_after: Decimal


# Agent Events
class LifecycleChanged(SystemEvent):
    agent_id: str
    old_status: str
    new_status: str
    balance: Decimal


class ExceptionDetected(SystemEvent):
    agent_id: str
    round_number: int
    exception_type: str
    detail: str


class PolicyChanged(SystemEvent):
    agent_id: str
    version: int
    source: str
    delta: dict


class RoundCompleted(SystemEvent):
    round_number: int
    summary: dict
