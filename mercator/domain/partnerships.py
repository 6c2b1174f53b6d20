from loguru import logger
from sqlalchemy.orm import Session

from mercator.core.exceptions import NotFoundError
from mercator.domain.agents import AgentManager
from mercator.domain.autopilot import PartnershipAction, PartnershipProposal, evaluate_partnership
from mercator.domain.models import AuditEvent, Partnership, PartnershipStatus, utc_now

STATUS_FOR_ACTION = {
    PartnershipAction.ACCEPT: PartnershipStatus.ACCEPTED,
    PartnershipAction.REJECT: PartnershipStatus.REJECTED,
    PartnershipAction.ESCALATE: PartnershipStatus.ESCALATED,
}


class PartnershipManager:
    @staticmethod
    def propose(session: Session, proposer_id: str, target_id: str, proposer_split: int, round_number: int = 0) -> Partnership:
        """Record a proposal and let the target's autopilot triage it."""
        if proposer_id == target_id:
            raise ValueError("An agent cannot partner with itself")

        proposer = AgentManager.get_agent(session, proposer_id)
        target = AgentManager.get_agent(session, target_id)
        policy = AgentManager.current_policy(session, target_id)

        decision = evaluate_partnership(
            PartnershipProposal(
                partner_id=proposer.id,
                partner_type=proposer.type,
                partner_reputation=proposer.reputation,
                proposed_split=proposer_split,
            ),
            policy,
            target.type,
        )

        partnership = Partnership(
            proposer_id=proposer_id,
            target_id=target_id,
            proposer_split=proposer_split,
            status=STATUS_FOR_ACTION[decision.action],
            reasoning=decision.reasoning,
            round_number=round_number,
        )
        if decision.action != PartnershipAction.ESCALATE:
            partnership.decided_at = utc_now()
        session.add(partnership)
        session.flush()
        session.add(
            AuditEvent(
                event_type="partnership_proposed",
                agent_id=target_id,
                round_number=round_number,
                details={
                    "partnership_id": partnership.id,
                    "proposer_id": proposer_id,
                    "decision": decision.action.value,
                    "reasoning": decision.reasoning,
                },
            )
        )
        session.commit()
        logger.info(
            f"[component:partnerships] {proposer_id} -> {target_id} ({proposer_split}%): {decision.action.value}"
        )
        return partnership

    @staticmethod
    def get(session: Session, partnership_id: str) -> Partnership:
        partnership = session.query(Partnership).filter_by(id=partnership_id).first()
        if not partnership:
            raise NotFoundError(f"Partnership {partnership_id} not found")
        return partnership

    @staticmethod
    def resolve(session: Session, partnership_id: str, accept: bool, reasoning: str) -> Partnership:
        """Settle an escalated proposal. Already-decided proposals are left as they are."""
        partnership = PartnershipManager.get(session, partnership_id)
        if partnership.status != PartnershipStatus.ESCALATED:
            return partnership

        partnership.status = PartnershipStatus.ACCEPTED if accept else PartnershipStatus.REJECTED
        partnership.reasoning = reasoning
        partnership.decided_at = utc_now()
        session.add(
            AuditEvent(
                event_type="partnership_resolved",
                agent_id=partnership.target_id,
                details={"partnership_id": partnership.id, "status": partnership.status.value},
            )
        )
        return partnership
