import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from mercator.domain.money import ZERO
from mercator.infra.database import Base

Money = Numeric(18, 6, asdecimal=True)


def utc_now():
    return datetime.now(UTC)


def generate_uuid():
    return str(uuid.uuid4())


class AgentType(enum.Enum):
    CATALOG = "CATALOG"
    REVIEW = "REVIEW"
    CURATION = "CURATION"
    SELLER = "SELLER"


class AgentStatus(enum.Enum):
    UNFUNDED = "unfunded"
    ACTIVE = "active"
    LOW_FUNDS = "low_funds"
    PAUSED = "paused"
    DEAD = "dead"


# Statuses that take part in bidding
BIDDING_STATUSES = (AgentStatus.ACTIVE, AgentStatus.LOW_FUNDS)


class TaskStatus(enum.Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    EXPIRED = "expired"


class BidStatus(enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


class PartnershipStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String)
    type = Column(SQLEnum(AgentType), nullable=False)
    personality = Column(String, default="balanced")
    balance = Column(Money, default=ZERO)
    reputation = Column(Float, default=3.0)
    status = Column(SQLEnum(AgentStatus), default=AgentStatus.UNFUNDED)
    cost_structure = Column(JSON)
    investor_share_bps = Column(Integer, default=7500)
    wallet_address = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now)

    policies = relationship("PolicyVersion", back_populates="agent", order_by="PolicyVersion.version")
    runtime = relationship("RuntimeState", back_populates="agent", uselist=False)


class PolicyVersion(Base):
    __tablename__ = "policy_versions"
    __table_args__ = (UniqueConstraint("agent_id", "version"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    agent_id = Column(String, ForeignKey("agents.id"), index=True)
    version = Column(Integer, nullable=False)
    policy = Column(JSON, nullable=False)
    source = Column(String, default="initial")  # initial, advisor, fallback, manual
    reason = Column(String)
    created_at = Column(DateTime, default=utc_now)

    agent = relationship("Agent", back_populates="policies")


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=generate_uuid)
    type = Column(SQLEnum(AgentType), nullable=False)
    max_bid = Column(Money, nullable=False)
    input_ref = Column(String)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.OPEN, index=True)
    round_number = Column(Integer, default=0)
    assigned_agent_id = Column(String, ForeignKey("agents.id"), nullable=True)
    winning_bid_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime)

    bids = relationship("Bid", back_populates="task")


class Bid(Base):
    __tablename__ = "bids"
    __table_args__ = (UniqueConstraint("task_id", "agent_id"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), index=True)
    agent_id = Column(String, ForeignKey("agents.id"), index=True)
    amount = Column(Money, nullable=False)
    score = Column(Float)  # snapshot written at settlement, never read back for ranking
    status = Column(SQLEnum(BidStatus), default=BidStatus.PENDING)
    round_number = Column(Integer, default=0)
    reasoning = Column(String)
    created_at = Column(DateTime, default=utc_now)

    task = relationship("Task", back_populates="bids")
    agent = relationship("Agent")


class RuntimeState(Base):
    __tablename__ = "runtime_states"

    agent_id = Column(String, ForeignKey("agents.id"), primary_key=True)
    current_round = Column(Integer, default=0)
    consecutive_wins = Column(Integer, default=0)
    consecutive_losses = Column(Integer, default=0)
    total_bids = Column(Integer, default=0)
    total_wins = Column(Integer, default=0)
    recent_results = Column(JSON, default=list)  # last 20 outcomes, True = won
    win_rate_last_20 = Column(Float, default=0.0)
    total_revenue = Column(Money, default=ZERO)
    total_costs = Column(Money, default=ZERO)
    total_brain_wakeups = Column(Integer, default=0)
    total_brain_cost = Column(Money, default=ZERO)
    total_policy_changes = Column(Integer, default=0)
    reputation_at_last_check = Column(Float)
    win_rate_at_last_check = Column(Float, default=0.0)
    last_brain_wakeup_round = Column(Integer, default=0)
    last_review_round = Column(Integer, default=0)
    last_policy_change_round = Column(Integer)
    metrics_at_last_change = Column(JSON)

    agent = relationship("Agent", back_populates="runtime")


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(String, primary_key=True, default=generate_uuid)
    event_type = Column(String, index=True)
    agent_id = Column(String, index=True)
    task_id = Column(String, index=True, nullable=True)
    round_number = Column(Integer)
    amount = Column(Money, nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utc_now)


class TokenHolding(Base):
    __tablename__ = "token_holdings"
    __table_args__ = (UniqueConstraint("agent_id", "holder_wallet"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    agent_id = Column(String, ForeignKey("agents.id"), index=True)
    holder_wallet = Column(String, nullable=False)
    token_balance = Column(Numeric(30, 0), default=0)


class EscrowBalance(Base):
    __tablename__ = "escrow_balances"
    __table_args__ = (UniqueConstraint("agent_id", "holder_wallet"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    agent_id = Column(String, ForeignKey("agents.id"), index=True)
    holder_wallet = Column(String, nullable=False)
    total_earned = Column(Money, default=ZERO)
    total_claimed = Column(Money, default=ZERO)
    last_deposit_at = Column(DateTime)
    last_claim_at = Column(DateTime)

    @property
    def available(self) -> Decimal:
        return (self.total_earned or ZERO) - (self.total_claimed or ZERO)


class Partnership(Base):
    __tablename__ = "partnerships"

    id = Column(String, primary_key=True, default=generate_uuid)
    proposer_id = Column(String, ForeignKey("agents.id"))
    target_id = Column(String, ForeignKey("agents.id"))
    proposer_split = Column(Integer, nullable=False)  # percent kept by the proposer
    status = Column(SQLEnum(PartnershipStatus), default=PartnershipStatus.PENDING)
    reasoning = Column(String)
    round_number = Column(Integer, default=0)
    created_at = Column(DateTime, default=utc_now)
    decided_at = Column(DateTime)


class DecisionRecord(Base):
    __tablename__ = "decision_records"

    id = Column(String, primary_key=True, default=generate_uuid)
    agent_id = Column(String, ForeignKey("agents.id"), index=True)
    round_number = Column(Integer)
    trigger_type = Column(String)
    trigger_detail = Column(String)
    source = Column(String)  # advisor or fallback
    policy_delta = Column(JSON, default=dict)
    reasoning = Column(String)
    partnership_actions = Column(JSON, default=list)
    narrative = Column(String)
    cost = Column(Money, default=ZERO)
    created_at = Column(DateTime, default=utc_now)


class AgentMemory(Base):
    __tablename__ = "agent_memories"

    id = Column(String, primary_key=True, default=generate_uuid)
    agent_id = Column(String, ForeignKey("agents.id"), index=True)
    memory_type = Column(String, index=True)  # bid_outcome, task_execution, exception, review, partnership_review
    round_number = Column(Integer)
    task_id = Column(String, nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utc_now)


class RoundRecord(Base):
    __tablename__ = "rounds"

    number = Column(Integer, primary_key=True)
    started_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime)
    summary = Column(JSON)
