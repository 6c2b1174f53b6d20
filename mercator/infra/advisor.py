"""Strategic advisor clients.

The advisor is a black box: it receives an AdvisorRequest and answers with a partial
policy delta, reasoning, partnership actions and a narrative. When it is disabled,
slow or broken, ``fallback_response`` supplies a small deterministic correction.
"""

from __future__ import annotations

from typing import Protocol

import httpx
from loguru import logger
from pydantic import ValidationError

from mercator.core.config import AdvisorConfig
from mercator.core.exceptions import AdvisorError
from mercator.domain.contracts import AdvisorRequest, AdvisorResponse, PartnershipInstruction
from mercator.domain.policy import Policy

MARGIN_STEP = 0.02
MAX_TARGET_MARGIN = 0.95

# Trigger types that call for cheaper bids (win more) vs. dearer ones (protect capital)
LOOSEN_TRIGGERS = {"consecutive_losses", "win_rate_drop"}
TIGHTEN_TRIGGERS = {"low_balance", "reputation_drop"}


class StrategicAdvisor(Protocol):
    async def advise(self, request: AdvisorRequest) -> AdvisorResponse: ...


class HttpAdvisor:
    """Calls the advisor service over HTTP. Timeouts are enforced by the caller too."""

    def __init__(self, config: AdvisorConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or AdvisorConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))
        return self._client

    async def advise(self, request: AdvisorRequest) -> AdvisorResponse:
        try:
            response = await self.client.post(f"{self.base_url}/advise", json=request.model_dump(mode="json"))
            response.raise_for_status()
            return AdvisorResponse.model_validate(response.json())
        except httpx.HTTPError as e:
            raise AdvisorError(f"Advisor request failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise AdvisorError(f"Advisor returned an unusable response: {e}") from e

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def fallback_response(trigger_type: str, policy: Policy, partnership_id: str | None = None) -> AdvisorResponse:
    """
    Deterministic stand-in for the advisor.

    Losing streaks and falling win rates loosen the target margin one step (never below
    the minimum margin); low balance and reputation drops tighten it one step. Reviews
    keep the policy as is, and escalated partnerships are declined.
    """
    bidding = policy.bidding
    delta: dict = {}

    if trigger_type in LOOSEN_TRIGGERS:
        margin = round(max(bidding.min_margin, bidding.target_margin - MARGIN_STEP), 4)
        if margin != bidding.target_margin:
            delta = {"bidding": {"target_margin": margin}}
    elif trigger_type in TIGHTEN_TRIGGERS:
        margin = round(min(MAX_TARGET_MARGIN, bidding.target_margin + MARGIN_STEP), 4)
        if margin != bidding.target_margin:
            delta = {"bidding": {"target_margin": margin}}

    actions = []
    if partnership_id:
        actions.append(PartnershipInstruction(action="reject", partnership_id=partnership_id))

    logger.debug(f"[component:advisor] Fallback for {trigger_type}: {delta or 'no policy change'}")
    return AdvisorResponse(
        policy_delta=delta,
        reasoning=f"Default response to {trigger_type} (advisor unavailable)",
        partnership_actions=actions,
    )
