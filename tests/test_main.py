"""
test_main.py — HTTP surface (Slack events, interactive actions, health).

The app is driven in-process through httpx's ASGI transport; background tasks
finish before the response is returned, so their side effects can be asserted
directly.
"""
import hashlib
import hmac
import json
import logging
import time
from urllib.parse import urlencode

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from sopbot.config import Settings
from sopbot.main import create_app
from sopbot.models import FeedbackVote, SessionState

THREAD = "1700000000.000100"


@pytest.fixture
def config():
    return Settings(slack_signing_secret="", slack_bot_user_id="UBOT")


@pytest_asyncio.fixture
async def client(orchestrator, config):
    app = create_app(orchestrator=orchestrator, config=config)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def event_envelope(event: dict) -> dict:
    return {"type": "event_callback", "team_id": "T1", "event": event}


@pytest.mark.asyncio
async def test_url_verification_echoes_challenge(client):
    response = await client.post("/slack/events", json={"type": "url_verification", "challenge": "abc123"})

    assert response.status_code == 200
    assert response.json() == {"challenge": "abc123"}


@pytest.mark.asyncio
async def test_app_mention_is_answered(client, store, transport):
    response = await client.post("/slack/events", json=event_envelope({
        "type": "app_mention", "user": "U1", "text": "<@UBOT> how do I offboard someone",
        "channel": "C1", "ts": THREAD, "event_ts": THREAD,
    }))

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert len(transport.posted) == 1
    assert store.get("U1", THREAD).state is SessionState.ACTIVE


@pytest.mark.asyncio
async def test_thread_message_is_routed(client, store, transport):
    await client.post("/slack/events", json=event_envelope({
        "type": "app_mention", "user": "U1", "text": "<@UBOT> offboard", "channel": "C1", "ts": THREAD,
    }))
    await client.post("/slack/events", json=event_envelope({
        "type": "message", "user": "U1", "text": "next step", "channel": "C1",
        "ts": "1700000005.000500", "thread_ts": THREAD,
    }))

    assert store.get("U1", THREAD).current_step_number == 2
    assert len(transport.posted) == 2


@pytest.mark.asyncio
async def test_slack_retries_are_acknowledged_without_processing(client, transport, generator):
    response = await client.post(
        "/slack/events",
        json=event_envelope({"type": "app_mention", "user": "U1", "text": "<@UBOT> offboard",
                             "channel": "C1", "ts": THREAD}),
        headers={"X-Slack-Retry-Num": "1", "X-Slack-Retry-Reason": "http_timeout"},
    )

    assert response.status_code == 200
    assert transport.posted == []
    assert generator.calls == []


@pytest.mark.asyncio
async def test_malformed_event_body(client):
    response = await client.post("/slack/events", content=b"not json",
                                 headers={"Content-Type": "application/json"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_feedback_action_is_recorded(client, logging_sink, transport):
    value = json.dumps({"channel": "C1", "thread_ts": THREAD, "user_id": "U1", "row_id": "i-row3"})
    payload = {
        "type": "block_actions",
        "user": {"id": "U1"},
        "container": {"type": "message", "channel_id": "C1", "message_ts": "1700000003.000300"},
        "actions": [{"action_id": "sop_feedback_yes", "block_id": "sop_feedback", "value": value}],
    }

    response = await client.post(
        "/slack/actions",
        content=urlencode({"payload": json.dumps(payload)}),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    assert response.status_code == 200
    assert logging_sink.feedback == [("i-row3", FeedbackVote.YES)]
    assert transport.updated[0]["ts"] == "1700000003.000300"


@pytest.mark.asyncio
async def test_actions_without_payload_are_rejected(client):
    response = await client.post("/slack/actions", content=b"foo=bar",
                                 headers={"Content-Type": "application/x-www-form-urlencoded"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "sessions": 0}


def test_missing_signing_secret_is_warned_about(caplog):
    with caplog.at_level(logging.WARNING, logger="sopbot.main"):
        create_app(config=Settings(slack_signing_secret=""))
    assert "SLACK_SIGNING_SECRET is not set" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="sopbot.main"):
        create_app(config=Settings(slack_signing_secret="shh"))
    assert "SLACK_SIGNING_SECRET" not in caplog.text


@pytest.mark.asyncio
async def test_signed_requests(orchestrator):
    app = create_app(orchestrator=orchestrator, config=Settings(slack_signing_secret="shh"))
    body = json.dumps({"type": "url_verification", "challenge": "abc"}).encode()
    timestamp = str(int(time.time()))
    signature = "v0=" + hmac.new(b"shh", b"v0:" + timestamp.encode() + b":" + body, hashlib.sha256).hexdigest()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        good = await ac.post("/slack/events", content=body, headers={
            "Content-Type": "application/json",
            "X-Slack-Request-Timestamp": timestamp,
            "X-Slack-Signature": signature,
        })
        bad = await ac.post("/slack/events", content=body, headers={
            "Content-Type": "application/json",
            "X-Slack-Request-Timestamp": timestamp,
            "X-Slack-Signature": "v0=deadbeef",
        })

    assert good.status_code == 200
    assert good.json() == {"challenge": "abc"}
    assert bad.status_code == 401
