import random
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from mercator.api.dependencies import get_db
from mercator.api.service import app
from mercator.core.config import AppConfig
from mercator.core.orchestrator import RoundOrchestrator
from mercator.domain.memory import MemoryJournal
from mercator.domain.models import Agent, EscrowBalance, Partnership, PartnershipStatus


@pytest.fixture
def orchestrator(session_factory):
    return RoundOrchestrator(session_factory, AppConfig(), rng=random.Random(5))


@pytest.fixture
def client(session_factory, orchestrator, monkeypatch):
    monkeypatch.delenv("NATS_URL", raising=False)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = orchestrator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    del app.state.orchestrator


def create_agent(client, name, **overrides):
    body = {"name": name, "type": "CATALOG", "initial_balance": "1.0"} | overrides
    response = client.post("/agents", json=body)
    assert response.status_code == 201
    return response.json()


def test_create_and_get_agent(client):
    created = create_agent(client, "steady", reputation=4.0)

    assert created["status"] == "active"
    assert created["balance"] == "1.000000"

    response = client.get(f"/agents/{created['id']}")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "steady"
    assert data["runtime"]["total_bids"] == 0
    assert [a["id"] for a in client.get("/agents").json()] == [created["id"]]


def test_get_agent_not_found(client):
    response = client.get("/agents/ghost")
    assert response.status_code == 404


def test_create_agent_validation(client):
    response = client.post("/agents", json={"name": "x", "type": "CATALOG", "initial_balance": "-1"})
    assert response.status_code == 422


def test_policy_endpoints(client):
    agent = create_agent(client, "tuner")

    response = client.post(
        f"/agents/{agent['id']}/policies", json={"delta": {"bidding": {"target_margin": 0.3}}, "reason": "operator"}
    )
    assert response.status_code == 201
    assert response.json()["version"] == 2

    history = client.get(f"/agents/{agent['id']}/policies").json()
    assert [(p["version"], p["source"]) for p in history] == [(1, "initial"), (2, "manual")]

    bad = client.post(f"/agents/{agent['id']}/policies", json={"delta": {"bidding": {"min_margin": 0.9}}})
    assert bad.status_code == 400
    assert client.post("/agents/ghost/policies", json={"delta": {"bidding": {"target_margin": 0.3}}}).status_code == 404
    assert client.get("/agents/ghost/policies").status_code == 404


def test_pause_and_resume(client):
    agent = create_agent(client, "sleepy")

    assert client.post(f"/agents/{agent['id']}/pause").json()["status"] == "paused"
    assert client.post(f"/agents/{agent['id']}/resume").json()["status"] == "unfunded"
    assert client.post(f"/agents/{agent['id']}/resume").status_code == 400
    assert client.post("/agents/ghost/pause").status_code == 404


def test_round_through_the_api(client):
    steady = create_agent(client, "steady", reputation=4.0)
    hungry = create_agent(client, "hungry", personality="aggressive")
    task = client.post("/tasks", json={"type": "CATALOG", "max_bid": "0.1"}).json()
    assert task["status"] == "open"

    summary = client.post("/rounds").json()

    assert summary["round"] == 1
    assert summary["tasks_completed"] == 1
    assert summary["total_revenue"] == "0.075358"

    bids = client.get(f"/tasks/{task['id']}/bids").json()
    assert [b["agent_id"] for b in bids] == [hungry["id"], steady["id"]]
    assert client.get("/tasks", params={"status": "completed"}).json()[0]["assigned_agent_id"] == hungry["id"]
    assert client.get("/tasks", params={"status": "open"}).json() == []

    record = client.get("/rounds/1").json()
    assert record["summary"]["bids_placed"] == 2
    assert client.get("/rounds/2").status_code == 404

    audit = client.get(f"/agents/{hungry['id']}/audit").json()
    assert {"auction_closed", "task_completed", "living_cost"} <= {e["event_type"] for e in audit}


def test_task_validation(client):
    assert client.post("/tasks", json={"type": "CATALOG", "max_bid": "0"}).status_code == 422
    assert client.get("/tasks/missing/bids").status_code == 404


def test_escrow_claim(client, session_factory):
    agent = create_agent(client, "earner")
    with session_factory() as db:
        db.add(
            EscrowBalance(
                agent_id=agent["id"], holder_wallet="0xholder", total_earned=Decimal("0.02"), total_claimed=Decimal("0")
            )
        )
        db.commit()

    assert client.get(f"/escrow/{agent['id']}").json()[0]["available"] == "0.020000"

    response = client.post("/escrow/claim", json={"agent_id": agent["id"], "holder_wallet": "0xholder"})
    assert response.status_code == 200
    data = response.json()
    assert Decimal(data["amount"]) == Decimal("0.02")
    assert data["settled"] is False

    again = client.post("/escrow/claim", json={"agent_id": agent["id"], "holder_wallet": "0xholder"})
    assert again.status_code == 400


def test_escalated_partnership_is_reviewed(session_factory, orchestrator, monkeypatch):
    monkeypatch.delenv("NATS_URL", raising=False)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.orchestrator = orchestrator
    try:
        # Shutdown drains the background review
        with TestClient(app) as client:
            star = create_agent(client, "star", reputation=4.5)
            reviewer = create_agent(client, "reviewer", type="REVIEW")
            response = client.post(
                "/partnerships", json={"proposer_id": star["id"], "target_id": reviewer["id"], "proposer_split": 60}
            )
            assert response.status_code == 201
            assert response.json()["status"] == "escalated"
            partnership_id = response.json()["id"]
    finally:
        app.dependency_overrides.clear()
        del app.state.orchestrator

    with session_factory() as db:
        assert db.get(Partnership, partnership_id).status == PartnershipStatus.REJECTED
        assert db.get(Agent, reviewer["id"]).balance == Decimal("1.0")
        (memory,) = MemoryJournal.recent(db, reviewer["id"])
        assert memory.memory_type == "partnership_review"
        assert memory.details["source"] == "fallback"


def test_partnership_errors(client):
    agent = create_agent(client, "loner")
    same = client.post("/partnerships", json={"proposer_id": agent["id"], "target_id": agent["id"], "proposer_split": 50})
    assert same.status_code == 400
    missing = client.post("/partnerships", json={"proposer_id": "ghost", "target_id": agent["id"], "proposer_split": 50})
    assert missing.status_code == 404


def test_agent_memories(client, session_factory):
    agent = create_agent(client, "steady")
    with session_factory() as db:
        MemoryJournal.record(db, agent["id"], "bid_outcome", 1, {"won": False, "winner_amount": "0.075358"}, task_id="t1")
        MemoryJournal.record(db, agent["id"], "exception", 2, {"trigger_type": "low_balance"})
        db.commit()

    memories = client.get(f"/agents/{agent['id']}/memories").json()
    assert [m["memory_type"] for m in memories] == ["exception", "bid_outcome"]
    assert memories[1]["details"]["winner_amount"] == "0.075358"

    filtered = client.get(f"/agents/{agent['id']}/memories", params={"memory_type": "bid_outcome"}).json()
    assert [m["task_id"] for m in filtered] == ["t1"]
