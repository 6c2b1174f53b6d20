import os
import socket
from decimal import Decimal

# Keep spans in-process; must be set before any mercator module builds its tracer
os.environ.setdefault("OTEL_TRACES_EXPORTER", "none")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mercator.domain.agents import AgentManager
from mercator.domain.models import AgentType
from mercator.domain.policy import CostStructure
from mercator.infra.database import Base, init_db


def is_service_ready(host="localhost", port=4222):
    """Check if a service is responding on the given port."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


@pytest.fixture(scope="session")
def nats_server():
    """NATS URL for tests that need a live server; skipped when none is running."""
    nats_url = os.getenv("NATS_URL", "nats://localhost:4222")
    if not is_service_ready(port=4222):
        pytest.skip("NATS is not running on localhost:4222")
    yield nats_url


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_agent(session_factory):
    """Create an agent through AgentManager and return its id."""

    def _make(name="agent", agent_type=AgentType.CATALOG, balance="1.0", reputation=3.0, personality="balanced", **kwargs):
        with session_factory() as db:
            agent = AgentManager.create_agent(
                db,
                name=name,
                agent_type=agent_type,
                personality=personality,
                initial_balance=Decimal(balance),
                reputation=reputation,
                **kwargs,
            )
            return agent.id

    return _make


@pytest.fixture
def flat_costs():
    """A cost structure whose whole all-in cost is 0.057 of per-task inference."""
    return CostStructure.model_validate({"per_task": {"llm_inference": "0.057"}})
