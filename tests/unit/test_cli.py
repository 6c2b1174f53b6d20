import pytest

from mercator import cli
from mercator.core.config import AppConfig
from mercator.domain.models import Agent, AgentStatus, RoundRecord, Task


def test_seed_agents(session):
    assert cli.seed_agents(session) == len(cli.DEMO_AGENTS)

    agents = session.query(Agent).all()
    assert sorted(a.name for a in agents) == sorted(name for name, *_ in cli.DEMO_AGENTS)
    assert all(a.status == AgentStatus.ACTIVE for a in agents)

    # Seeding is skipped once the economy has agents
    assert cli.seed_agents(session) == 0
    assert session.query(Agent).count() == len(cli.DEMO_AGENTS)


@pytest.mark.asyncio
async def test_run_rounds(session_factory, session, monkeypatch):
    monkeypatch.setattr(cli, "SessionLocal", session_factory)
    cli.seed_agents(session)
    config = AppConfig()
    config.rounds.generate_tasks = True

    await cli.run(config, rounds=2, continuous=False)

    with session_factory() as db:
        assert db.query(RoundRecord).count() == 2
        assert db.query(Task).count() == 6
