import httpx
import pytest

from mercator.core.config import AdvisorConfig
from mercator.core.exceptions import AdvisorError
from mercator.domain.contracts import AdvisorRequest
from mercator.domain.policy import default_policy
from mercator.infra.advisor import HttpAdvisor, fallback_response


def advisor_returning(response: httpx.Response) -> HttpAdvisor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response))
    return HttpAdvisor(AdvisorConfig(enabled=True, base_url="http://advisor.test"), client=client)


@pytest.fixture
def request_body():
    return AdvisorRequest(agent_id="a1", trigger_type="low_balance", round_number=4, context={"balance": "0.150000"})


@pytest.mark.asyncio
async def test_advise_parses_response(request_body):
    advisor = advisor_returning(
        httpx.Response(
            200,
            json={
                "policy_delta": {"bidding": {"target_margin": 0.25}},
                "reasoning": "Protect the runway",
                "partnership_actions": [{"action": "accept", "partner_id": "r1", "split": 40}],
            },
        )
    )

    response = await advisor.advise(request_body)

    assert response.policy_delta == {"bidding": {"target_margin": 0.25}}
    assert response.partnership_actions[0].split == 40
    assert response.narrative == ""
    await advisor.close()


@pytest.mark.asyncio
async def test_advise_server_error(request_body):
    advisor = advisor_returning(httpx.Response(500, text="boom"))
    with pytest.raises(AdvisorError, match="request failed"):
        await advisor.advise(request_body)


@pytest.mark.asyncio
async def test_advise_unusable_body(request_body):
    advisor = advisor_returning(httpx.Response(200, text="not json"))
    with pytest.raises(AdvisorError, match="unusable response"):
        await advisor.advise(request_body)


@pytest.mark.parametrize(
    "trigger_type, expected",
    [
        ("consecutive_losses", {"bidding": {"target_margin": 0.18}}),
        ("win_rate_drop", {"bidding": {"target_margin": 0.18}}),
        ("low_balance", {"bidding": {"target_margin": 0.22}}),
        ("reputation_drop", {"bidding": {"target_margin": 0.22}}),
        ("review", {}),
    ],
)
def test_fallback_nudges_margin(trigger_type, expected):
    response = fallback_response(trigger_type, default_policy("balanced"))
    assert response.policy_delta == expected
    assert response.partnership_actions == []


def test_fallback_respects_min_margin():
    policy = default_policy("aggressive")
    policy.bidding.target_margin = policy.bidding.min_margin

    assert fallback_response("consecutive_losses", policy).policy_delta == {}


def test_fallback_rejects_escalated_partnership():
    response = fallback_response("partnership_review", default_policy(), partnership_id="p1")

    assert response.policy_delta == {}
    assert [(a.action, a.partnership_id) for a in response.partnership_actions] == [("reject", "p1")]
