import json
from unittest.mock import AsyncMock

import pytest
from loguru import logger
from nats.errors import ConnectionClosedError

from mercator.domain.events import AuctionExpired, publish_event


@pytest.fixture
def warnings():
    messages = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="WARNING")
    yield messages
    logger.remove(handler_id)


@pytest.mark.asyncio
async def test_publish_sends_json_payload():
    nc = AsyncMock()

    await publish_event(nc, "system.auction.expired", AuctionExpired(task_id="t1", reason="no bids"))

    subject, payload = nc.publish.await_args.args
    assert subject == "system.auction.expired"
    assert json.loads(payload)["task_id"] == "t1"
    assert isinstance(nc.publish.await_args.kwargs["headers"], dict)


@pytest.mark.asyncio
async def test_publish_without_client_is_a_no_op():
    await publish_event(None, "system.auction.expired", AuctionExpired(task_id="t1", reason="no bids"))


@pytest.mark.asyncio
async def test_transport_failure_is_logged_not_raised(warnings):
    nc = AsyncMock()
    nc.publish.side_effect = ConnectionClosedError()

    await publish_event(nc, "system.auction.expired", AuctionExpired(task_id="t1", reason="no bids"))

    nc.publish.assert_awaited_once()
    assert any("Failed to publish system.auction.expired" in m for m in warnings)
