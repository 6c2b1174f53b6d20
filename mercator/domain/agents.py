from decimal import Decimal

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from mercator.core.exceptions import NotFoundError
from mercator.domain.models import Agent, AgentStatus, AgentType, AuditEvent, PolicyVersion
from mercator.domain.money import ZERO, to_money
from mercator.domain.policy import CostStructure, Policy, default_costs, default_policy, merge_policy
from mercator.domain.state import RuntimeStateManager


class AgentManager:
    """Agent creation, policy versioning and manual pause/resume."""

    @staticmethod
    def create_agent(
        session: Session,
        name: str,
        agent_type: AgentType,
        personality: str = "balanced",
        initial_balance: Decimal = ZERO,
        reputation: float = 3.0,
        wallet_address: str | None = None,
        investor_share_bps: int = 7500,
        agent_id: str | None = None,
    ) -> Agent:
        balance = to_money(initial_balance)
        agent = Agent(
            name=name,
            type=agent_type,
            personality=personality,
            balance=balance,
            reputation=reputation,
            status=AgentStatus.ACTIVE if balance > ZERO else AgentStatus.UNFUNDED,
            cost_structure=default_costs(agent_type).model_dump(mode="json"),
            investor_share_bps=investor_share_bps,
            wallet_address=wallet_address,
        )
        if agent_id:
            agent.id = agent_id
        session.add(agent)
        session.flush()

        session.add(
            PolicyVersion(
                agent_id=agent.id,
                version=1,
                policy=default_policy(personality).model_dump(mode="json"),
                source="initial",
                reason=f"{personality} personality defaults",
            )
        )
        RuntimeStateManager.get_or_create(session, agent)
        session.add(
            AuditEvent(event_type="agent_created", agent_id=agent.id, amount=balance, details={"type": agent_type.value})
        )
        session.commit()
        logger.info(f"[component:agents] Created {agent_type.value} agent {agent.name} ({agent.id}) with ${balance}")
        return agent

    @staticmethod
    def get_agent(session: Session, agent_id: str) -> Agent:
        agent = session.query(Agent).filter_by(id=agent_id).first()
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found")
        return agent

    @staticmethod
    def costs_for(agent: Agent) -> CostStructure:
        if agent.cost_structure:
            return CostStructure.model_validate(agent.cost_structure)
        return default_costs(agent.type)

    @staticmethod
    def current_policy_row(session: Session, agent_id: str) -> PolicyVersion | None:
        return (
            session.query(PolicyVersion)
            .filter_by(agent_id=agent_id)
            .order_by(PolicyVersion.version.desc(), PolicyVersion.created_at.desc())
            .first()
        )

    @staticmethod
    def current_policy(session: Session, agent_id: str) -> Policy:
        row = AgentManager.current_policy_row(session, agent_id)
        if row is None:
            raise NotFoundError(f"No policy for agent {agent_id}")
        return Policy.model_validate(row.policy)

    @staticmethod
    def policy_history(session: Session, agent_id: str) -> list[PolicyVersion]:
        return session.query(PolicyVersion).filter_by(agent_id=agent_id).order_by(PolicyVersion.version).all()

    @staticmethod
    def append_policy(session: Session, agent_id: str, delta: dict, source: str, reason: str | None = None) -> PolicyVersion:
        """
        Append a new policy version built from the current one plus ``delta``.

        Policies are never edited in place. Two concurrent writers may both append; the
        higher version wins, which is acceptable for this data.
        """
        current = AgentManager.current_policy(session, agent_id)
        updated = merge_policy(current, delta)

        last_version = session.query(func.max(PolicyVersion.version)).filter_by(agent_id=agent_id).scalar() or 0
        row = PolicyVersion(
            agent_id=agent_id,
            version=last_version + 1,
            policy=updated.model_dump(mode="json"),
            source=source,
            reason=reason,
        )
        session.add(row)
        session.flush()
        logger.info(f"[component:agents] Agent {agent_id} policy v{row.version} ({source}): {delta}")
        return row

    @staticmethod
    def pause(session: Session, agent_id: str) -> Agent:
        agent = AgentManager.get_agent(session, agent_id)
        if agent.status == AgentStatus.DEAD:
            raise ValueError("Cannot pause a dead agent")
        old = agent.status
        agent.status = AgentStatus.PAUSED
        session.add(
            AuditEvent(
                event_type="lifecycle_change",
                agent_id=agent.id,
                details={"from": old.value, "to": AgentStatus.PAUSED.value, "manual": True},
            )
        )
        session.commit()
        return agent

    @staticmethod
    def resume(session: Session, agent_id: str) -> Agent:
        """Hand a paused agent back to lifecycle classification on the next sweep."""
        agent = AgentManager.get_agent(session, agent_id)
        if agent.status != AgentStatus.PAUSED:
            raise ValueError("Agent is not paused")
        agent.status = AgentStatus.UNFUNDED
        session.add(
            AuditEvent(
                event_type="lifecycle_change",
                agent_id=agent.id,
                details={"from": AgentStatus.PAUSED.value, "to": AgentStatus.UNFUNDED.value, "manual": True},
            )
        )
        session.commit()
        return agent
