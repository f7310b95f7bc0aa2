"""
Tests for the push API client.
"""

import httpx
import pytest

from mission_indexer.services.push_client import PushClient
from tests.factories import MISSION_A, PLAYER_A, RecordingPush


@pytest.mark.asyncio
async def test_mission_update_payload_and_auth_header():
    push = RecordingPush()

    ok = await push.client.notify_mission(MISSION_A, "Kick.Enrolled", "0xabc")

    assert ok
    request = push.requests[0]
    assert request["path"] == "/push/mission"
    assert request["headers"]["x-push-key"] == "secret"
    assert request["body"] == {"mission": MISSION_A, "reason": "Kick.Enrolled", "txHash": "0xabc"}


@pytest.mark.asyncio
async def test_tx_hash_omitted_when_absent():
    push = RecordingPush()

    await push.client.notify_mission(MISSION_A, "CooldownStarted")

    assert push.requests[0]["body"] == {"mission": MISSION_A, "reason": "CooldownStarted"}


@pytest.mark.asyncio
async def test_status_and_round_payloads():
    push = RecordingPush()

    await push.client.notify_status(MISSION_A, 7)
    await push.client.notify_round(MISSION_A, 3, PLAYER_A, 10**30)

    assert push.bodies("/push/status") == [{"mission": MISSION_A, "newStatus": 7}]
    assert push.bodies("/push/round") == [{
        "mission": MISSION_A,
        "round": 3,
        "winner": PLAYER_A,
        "amountWei": str(10**30),
    }]


@pytest.mark.asyncio
async def test_server_error_reported_as_false():
    push = RecordingPush(status_code=500)

    assert await push.client.notify_status(MISSION_A, 3) is False
    assert len(push.requests) == 1


@pytest.mark.asyncio
async def test_connection_error_reported_as_false():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = PushClient("http://push.test", "secret", transport=httpx.MockTransport(refuse))

    assert await client.notify_mission(MISSION_A, "MissionEnd.Success") is False
    await client.close()


@pytest.mark.asyncio
async def test_disabled_client_sends_nothing():
    client = PushClient(base_url="", api_key="secret")

    assert await client.notify_mission(MISSION_A, "MissionEnd.Success") is False
    assert not client.enabled
