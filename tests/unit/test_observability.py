from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from mercator.core.auction import AuctionSettlement
from mercator.core.bidding import BiddingService
from mercator.core.observability import extract_context, inject_context, set_span_attributes, setup_tracing
from mercator.domain.models import AgentType
from mercator.domain.tasks import TaskManager


@pytest.fixture(scope="module")
def module_exporter():
    # Importing the services installs the SDK provider; spans are kept in memory
    provider = trace.get_tracer_provider()
    assert isinstance(provider, TracerProvider)
    exporter = InMemorySpanExporter()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


@pytest.fixture
def span_exporter(module_exporter):
    module_exporter.clear()
    return module_exporter


def test_inject_context():
    """Test that inject_context adds traceparent to headers."""
    tracer = setup_tracing("test-service")
    headers = {}

    with tracer.start_as_current_span("test-span"):
        inject_context(headers)

    assert "traceparent" in headers
    assert headers["traceparent"].startswith("00-")


def test_extract_context():
    """Test that extract_context retrieves context from headers."""
    trace_id = "ff000000000000000000000000000041"
    span_id = "ff00000000000041"
    headers = {"traceparent": f"00-{trace_id}-{span_id}-01"}

    context = extract_context(headers)
    span_context = trace.get_current_span(context).get_span_context()

    assert format(span_context.trace_id, "032x") == trace_id
    assert format(span_context.span_id, "016x") == span_id


def test_extract_context_none():
    assert extract_context(None) is not None


def test_set_span_attributes():
    span = MagicMock()

    set_span_attributes(span, round__number=3, round__revenue=Decimal("0.075358"), agent__id=None, ok=True)

    span.set_attribute.assert_any_call("round.number", 3)
    span.set_attribute.assert_any_call("round.revenue", "0.075358")
    span.set_attribute.assert_any_call("ok", True)
    assert span.set_attribute.call_count == 3


@pytest.mark.asyncio
async def test_settlement_is_traced(span_exporter, session, make_agent):
    agent_id = make_agent()
    task = TaskManager.post_task(session, AgentType.CATALOG, Decimal("0.1"), round_number=1)
    BiddingService.place_bid(session, agent_id, task.id, "0.08", round_number=1)

    await AuctionSettlement.close_auction(session, task.id)

    span = next(s for s in span_exporter.get_finished_spans() if s.name == "auction_settlement")
    assert span.attributes["task.id"] == task.id
    assert span.attributes["auction.bid_count"] == 1
    assert span.attributes["auction.winner"] == agent_id
