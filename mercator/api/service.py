from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request
from sqlalchemy.orm import Session

from mercator.api.dependencies import get_db
from mercator.core.auction import AuctionSettlement
from mercator.core.config import load_config
from mercator.core.exceptions import MercatorError, NotFoundError
from mercator.core.orchestrator import RoundOrchestrator
from mercator.domain.agents import AgentManager
from mercator.domain.contracts import (
    AgentCreateRequest,
    EscrowClaimRequest,
    PartnershipRequest,
    PolicyUpdateRequest,
    TaskCreateRequest,
)
from mercator.domain.economy import EconomicEngine
from mercator.domain.memory import MemoryJournal
from mercator.domain.models import Agent, AuditEvent, DecisionRecord, PartnershipStatus, RoundRecord, Task, TaskStatus
from mercator.domain.money import to_money
from mercator.domain.partnerships import PartnershipManager
from mercator.domain.state import RuntimeStateManager
from mercator.domain.tasks import TaskManager
from mercator.infra.database import SessionLocal

app = FastAPI(title="Mercator API")


@app.on_event("startup")
async def startup_event():
    config = load_config()
    app.state.config = config
    app.state.economy_nc = None
    if config.nats.url:
        app.state.economy_nc = await EconomicEngine(config.economy).run_nats(config.nats.url)


@app.on_event("shutdown")
async def shutdown_event():
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.drain()
    if getattr(app.state, "economy_nc", None):
        await app.state.economy_nc.close()


def get_orchestrator(request: Request) -> RoundOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        config = getattr(request.app.state, "config", None) or load_config()
        orchestrator = RoundOrchestrator(SessionLocal, config)
        request.app.state.orchestrator = orchestrator
    return orchestrator


def _agent_dict(agent: Agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "type": agent.type.value,
        "personality": agent.personality,
        "status": agent.status.value,
        "balance": str(to_money(agent.balance)),
        "reputation": agent.reputation,
        "investor_share_bps": agent.investor_share_bps,
        "wallet_address": agent.wallet_address,
    }


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "type": task.type.value,
        "max_bid": str(to_money(task.max_bid)),
        "input_ref": task.input_ref,
        "status": task.status.value,
        "round_number": task.round_number,
        "assigned_agent_id": task.assigned_agent_id,
    }


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@app.get("/agents")
def list_agents(db: Annotated[Session, Depends(get_db)]):
    return [_agent_dict(a) for a in db.query(Agent).order_by(Agent.created_at, Agent.id)]


@app.post("/agents", status_code=201)
def create_agent(request: AgentCreateRequest, db: Annotated[Session, Depends(get_db)]):
    try:
        agent = AgentManager.create_agent(
            db,
            name=request.name,
            agent_type=request.type,
            personality=request.personality,
            initial_balance=request.initial_balance,
            reputation=request.reputation,
            wallet_address=request.wallet_address,
            investor_share_bps=request.investor_share_bps if request.investor_share_bps is not None else 7500,
        )
        return _agent_dict(agent)
    except (ValueError, MercatorError) as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.get("/agents/{agent_id}")
def get_agent(agent_id: str, db: Annotated[Session, Depends(get_db)]):
    try:
        agent = AgentManager.get_agent(db, agent_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    state = RuntimeStateManager.get_or_create(db, agent)
    result = _agent_dict(agent)
    result["runtime"] = {
        "current_round": state.current_round,
        "consecutive_wins": state.consecutive_wins,
        "consecutive_losses": state.consecutive_losses,
        "total_bids": state.total_bids,
        "total_wins": state.total_wins,
        "win_rate_last_20": state.win_rate_last_20,
        "total_revenue": str(to_money(state.total_revenue)),
        "total_costs": str(to_money(state.total_costs)),
        "total_brain_wakeups": state.total_brain_wakeups,
    }
    db.commit()
    return result


@app.get("/agents/{agent_id}/policies")
def list_policies(agent_id: str, db: Annotated[Session, Depends(get_db)]):
    rows = AgentManager.policy_history(db, agent_id)
    if not rows:
        raise HTTPException(status_code=404, detail=f"No policy for agent {agent_id}")
    return [
        {"version": r.version, "source": r.source, "reason": r.reason, "policy": r.policy, "created_at": r.created_at}
        for r in rows
    ]


@app.post("/agents/{agent_id}/policies", status_code=201)
def update_policy(agent_id: str, request: PolicyUpdateRequest, db: Annotated[Session, Depends(get_db)]):
    try:
        agent = AgentManager.get_agent(db, agent_id)
        row = AgentManager.append_policy(db, agent_id, request.delta, source="manual", reason=request.reason)
        state = RuntimeStateManager.get_or_create(db, agent)
        RuntimeStateManager.record_policy_change(
            state, state.current_round or 0, agent.balance, row.policy["bidding"]["target_margin"]
        )
        db.commit()
        return {"version": row.version, "policy": row.policy}
    except NotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (ValueError, MercatorError) as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.get("/agents/{agent_id}/audit")
def get_audit(agent_id: str, db: Annotated[Session, Depends(get_db)], limit: int = 100):
    events = db.query(AuditEvent).filter_by(agent_id=agent_id).order_by(AuditEvent.created_at.desc()).limit(limit)
    return [
        {
            "event_type": e.event_type,
            "task_id": e.task_id,
            "round_number": e.round_number,
            "amount": str(e.amount) if e.amount is not None else None,
            "details": e.details,
            "created_at": e.created_at,
        }
        for e in events
    ]


@app.get("/agents/{agent_id}/decisions")
def get_decisions(agent_id: str, db: Annotated[Session, Depends(get_db)]):
    records = db.query(DecisionRecord).filter_by(agent_id=agent_id).order_by(DecisionRecord.created_at.desc())
    return [
        {
            "round_number": r.round_number,
            "trigger_type": r.trigger_type,
            "trigger_detail": r.trigger_detail,
            "source": r.source,
            "policy_delta": r.policy_delta,
            "reasoning": r.reasoning,
            "narrative": r.narrative,
            "cost": str(to_money(r.cost)),
        }
        for r in records
    ]


@app.get("/agents/{agent_id}/memories")
def get_memories(
    agent_id: str, db: Annotated[Session, Depends(get_db)], memory_type: str | None = None, limit: int = 50
):
    return [
        {
            "memory_type": m.memory_type,
            "round_number": m.round_number,
            "task_id": m.task_id,
            "details": m.details,
            "created_at": m.created_at,
        }
        for m in MemoryJournal.recent(db, agent_id, limit=limit, memory_type=memory_type)
    ]


@app.post("/agents/{agent_id}/pause")
def pause_agent(agent_id: str, db: Annotated[Session, Depends(get_db)]):
    try:
        return _agent_dict(AgentManager.pause(db, agent_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.post("/agents/{agent_id}/resume")
def resume_agent(agent_id: str, db: Annotated[Session, Depends(get_db)]):
    try:
        return _agent_dict(AgentManager.resume(db, agent_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@app.post("/tasks", status_code=201)
def post_task(request: TaskCreateRequest, db: Annotated[Session, Depends(get_db)]):
    try:
        task = TaskManager.post_task(db, request.type, request.max_bid, input_ref=request.input_ref)
        return _task_dict(task)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.get("/tasks")
def list_tasks(db: Annotated[Session, Depends(get_db)], status: TaskStatus | None = None):
    query = db.query(Task)
    if status is not None:
        query = query.filter(Task.status == status)
    return [_task_dict(t) for t in query.order_by(Task.created_at, Task.id)]


@app.get("/tasks/{task_id}/bids")
def list_task_bids(task_id: str, db: Annotated[Session, Depends(get_db)]):
    try:
        TaskManager.get_task(db, task_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return [entry.model_dump(mode="json") for entry in AuctionSettlement.ranked_bids(db, task_id)]


# ---------------------------------------------------------------------------
# Partnerships and escrow
# ---------------------------------------------------------------------------


@app.post("/partnerships", status_code=201)
async def propose_partnership(
    request: PartnershipRequest,
    db: Annotated[Session, Depends(get_db)],
    orchestrator: Annotated[RoundOrchestrator, Depends(get_orchestrator)],
):
    try:
        partnership = PartnershipManager.propose(db, request.proposer_id, request.target_id, request.proposer_split)
    except NotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (ValueError, MercatorError) as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e

    if partnership.status == PartnershipStatus.ESCALATED:
        orchestrator.dispatch_partnership_review(partnership.id, orchestrator.next_round_number())
    return {"id": partnership.id, "status": partnership.status.value, "reasoning": partnership.reasoning}


@app.get("/escrow/{agent_id}")
def get_escrow(agent_id: str, db: Annotated[Session, Depends(get_db)]):
    return [
        {
            "holder_wallet": e.holder_wallet,
            "total_earned": str(to_money(e.total_earned)),
            "total_claimed": str(to_money(e.total_claimed)),
            "available": str(to_money(e.available)),
        }
        for e in EconomicEngine.escrow_balances(db, agent_id)
    ]


@app.post("/escrow/claim")
async def claim_escrow(
    request: EscrowClaimRequest,
    db: Annotated[Session, Depends(get_db)],
    orchestrator: Annotated[RoundOrchestrator, Depends(get_orchestrator)],
):
    try:
        transfer = orchestrator.economy.claim_escrow(db, request.agent_id, request.holder_wallet)
    except MercatorError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e)) from e

    receipts = await EconomicEngine.settle_transfers(orchestrator.session_factory, [transfer], orchestrator.payments)
    receipt = receipts[0]
    return {
        "amount": str(transfer.amount),
        "settled": receipt.settled,
        "tx_hash": receipt.tx_hash,
        "error": receipt.error,
    }


# ---------------------------------------------------------------------------
# Rounds
# ---------------------------------------------------------------------------


@app.post("/rounds")
async def run_round(orchestrator: Annotated[RoundOrchestrator, Depends(get_orchestrator)]):
    summary = await orchestrator.run_round()
    return summary.model_dump(mode="json")


@app.get("/rounds/{number}")
def get_round(number: int, db: Annotated[Session, Depends(get_db)]):
    record = db.get(RoundRecord, number)
    if not record:
        raise HTTPException(status_code=404, detail=f"Round {number} not found")
    return {
        "number": record.number,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "summary": record.summary,
    }
