"""
Round runner for the Mercator agent economy.

Initializes the database, seeds a demo roster when the economy is empty, then runs
rounds through the orchestrator. Behaviour is driven by environment variables:

    ROUNDS       number of rounds to run (default 10)
    CONTINUOUS   "1" to keep running, sleeping rounds.interval_seconds between rounds
    SERVE_API    "1" to serve the HTTP API on port 8000 in a background thread
    SEED_AGENTS  "0" to skip seeding the demo agents
"""

import asyncio
import os
import sys
import threading
from decimal import Decimal

import uvicorn
from loguru import logger

from mercator.core.config import AppConfig, load_config
from mercator.core.orchestrator import RoundOrchestrator
from mercator.domain.agents import AgentManager
from mercator.domain.models import Agent, AgentType
from mercator.infra.advisor import HttpAdvisor
from mercator.infra.database import SessionLocal, init_db
from mercator.infra.payments import HttpPaymentGateway

DEMO_AGENTS = [
    ("catalog-steady", AgentType.CATALOG, "balanced", "0.50", 4.2),
    ("catalog-hungry", AgentType.CATALOG, "volume-chaser", "0.40", 3.6),
    ("review-careful", AgentType.REVIEW, "conservative", "0.50", 4.5),
    ("review-sharp", AgentType.REVIEW, "aggressive", "0.35", 3.8),
    ("curation-margin", AgentType.CURATION, "profit-maximizer", "0.50", 4.0),
    ("curation-steady", AgentType.CURATION, "balanced", "0.45", 3.9),
]


def configure_logging(config: AppConfig):
    logger.remove()
    logger.add(sys.stderr, level=config.logging.level.upper())


def seed_agents(session) -> int:
    """Create the demo roster if no agents exist yet."""
    if session.query(Agent).first():
        logger.info("[component:cli] Agents already seeded")
        return 0

    for name, agent_type, personality, balance, reputation in DEMO_AGENTS:
        AgentManager.create_agent(
            session,
            name=name,
            agent_type=agent_type,
            personality=personality,
            initial_balance=Decimal(balance),
            reputation=reputation,
        )
    logger.info(f"[component:cli] Seeded {len(DEMO_AGENTS)} demo agents")
    return len(DEMO_AGENTS)


async def run(config: AppConfig, rounds: int, continuous: bool):
    nc = None
    if config.nats.url:
        import nats

        nc = await nats.connect(config.nats.url, connect_timeout=2)

    advisor = HttpAdvisor(config.advisor) if config.advisor.enabled else None
    payments = HttpPaymentGateway(config.payments) if config.payments.enabled else None
    orchestrator = RoundOrchestrator(SessionLocal, config, advisor=advisor, payments=payments, nc=nc)

    try:
        completed = 0
        while continuous or completed < rounds:
            summary = await orchestrator.run_round()
            completed += 1
            alive = sum(1 for a in summary.agent_states if a["status"] != "dead")
            logger.info(
                f"[component:cli] Round {summary.round}: {summary.tasks_completed}/{summary.tasks_processed} tasks "
                f"completed, revenue ${summary.total_revenue}, {alive} agents alive"
            )
            if continuous:
                await asyncio.sleep(config.rounds.interval_seconds)
        await orchestrator.drain()
    finally:
        if advisor is not None:
            await advisor.close()
        if payments is not None:
            await payments.close()
        if nc is not None:
            await nc.close()


def main():
    config = load_config()
    configure_logging(config)
    # The round runner always brings its own supply of tasks
    config.rounds.generate_tasks = True

    logger.info("[component:cli] Initializing database")
    init_db()

    if os.getenv("SEED_AGENTS", "1") != "0":
        with SessionLocal() as session:
            seed_agents(session)

    if os.getenv("SERVE_API") == "1":
        from mercator.api.service import app

        def run_api():
            uvicorn.run(app, host="0.0.0.0", port=8000, log_level="error")

        api_thread = threading.Thread(target=run_api, daemon=True)
        api_thread.start()
        logger.info("[component:cli] API server started on port 8000")

    rounds = int(os.getenv("ROUNDS", "10"))
    continuous = os.getenv("CONTINUOUS") == "1"
    asyncio.run(run(config, rounds, continuous))


if __name__ == "__main__":
    main()
