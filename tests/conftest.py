"""
Shared fixtures for the SOP bot tests.

All four external collaborators (SOP source, answer generator, logging sink,
chat transport) are replaced by in-memory fakes so no test touches the network.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

from sopbot.engine.graph import DialogueOrchestrator
from sopbot.engine.responses import ResponseFormatter
from sopbot.errors import GenerationFailure, LoggingFailure, RetrievalFailure
from sopbot.models import Document, FeedbackVote, SlackEvent, UsageRecord
from sopbot.services.session_store import SessionStore

TTL_SECONDS = 3600


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDocumentStore:
    def __init__(self, documents: Optional[List[Document]] = None, fail: bool = False):
        self.documents = documents or []
        self.fail = fail
        self.calls = 0

    def fetch_all(self) -> List[Document]:
        self.calls += 1
        if self.fail:
            raise RetrievalFailure("Coda unreachable")
        return list(self.documents)


class FakeGenerator:
    """Returns canned answers; a callable reply receives (context, instructions)."""

    def __init__(self, reply: Union[str, Callable[[str, str], str]] = "", fail: bool = False,
                 delay: float = 0.0):
        self.reply = reply
        self.fail = fail
        self.delay = delay
        self.calls: List[Dict[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def generate(self, context: str, instructions: str) -> str:
        with self._lock:
            self.calls.append({"context": context, "instructions": instructions})
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail:
                raise GenerationFailure("model unavailable")
            if callable(self.reply):
                return self.reply(context, instructions)
            return self.reply
        finally:
            with self._lock:
                self.in_flight -= 1


class FakeLoggingSink:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.usage: List[UsageRecord] = []
        self.feedback: List[tuple] = []

    def record_usage(self, record: UsageRecord) -> Optional[str]:
        if self.fail:
            raise LoggingFailure("log table unavailable")
        self.usage.append(record)
        return f"i-row{len(self.usage)}"

    def record_feedback(self, handle: str, helpful: FeedbackVote) -> None:
        if self.fail:
            raise LoggingFailure("log table unavailable")
        self.feedback.append((handle, helpful))


class FakeTransport:
    def __init__(self):
        self.posted: List[Dict[str, Any]] = []
        self.updated: List[Dict[str, Any]] = []
        self.permalink_requests: List[tuple] = []

    def post_message(self, channel, text, thread_ts=None, blocks=None) -> str:
        self.posted.append({"channel": channel, "text": text, "thread_ts": thread_ts, "blocks": blocks})
        return f"1700000000.{len(self.posted):06d}"

    def update_message(self, channel, ts, text, blocks=None) -> None:
        self.updated.append({"channel": channel, "ts": ts, "text": text, "blocks": blocks})

    def get_permalink(self, channel, message_ts) -> str:
        self.permalink_requests.append((channel, message_ts))
        return f"https://example.slack.com/archives/{channel}/p{message_ts.replace('.', '')}"


# ---------------------------------------------------------------------------
# Sample corpus
# ---------------------------------------------------------------------------

OFFBOARDING = Document(
    title="Offboarding Checklist",
    body="Use this when an employee leaves.\n## Step 1\nDisable their accounts.\n"
         "## Step 2\nCollect the laptop.\n## Step 3\nSend the exit survey.",
    link="https://coda.io/d/sops/offboarding",
    status="",
    tags=["offboarding", "hr"],
)

ONBOARDING = Document(
    title="Onboarding Guide",
    body="## Step 1\nCreate accounts.\n## Step 2\nShip a laptop.",
    link="https://coda.io/d/sops/onboarding",
    status="Live",
    tags=["onboarding"],
)

VPN_RESET = Document(
    title="VPN Access",
    body="## Step 1\nOpen the VPN client.\n## Step 2\nRequest a new certificate.",
    link="https://coda.io/d/sops/vpn",
    status="Pending review",
    author="Dana",
    tags="vpn; network | remote access",
)


def citing(document: Document, step: int = 1) -> str:
    return (
        f"*Step {step}:* Do the thing described in the SOP.\n"
        f"💡 Tip: double-check before you finish.\n"
        f"For more details and related links: <{document.link}|{document.title}>"
    )


def mention(text: str, user: str = "U1", channel: str = "C1", ts: str = "1700000000.000100",
            thread_ts: Optional[str] = None) -> SlackEvent:
    return SlackEvent(type="app_mention", user=user, text=f"<@UBOT> {text}", channel=channel,
                      ts=ts, thread_ts=thread_ts)


def thread_message(text: str, user: str = "U1", channel: str = "C1",
                   thread_ts: str = "1700000000.000100") -> SlackEvent:
    return SlackEvent(type="message", user=user, text=text, channel=channel,
                      ts="1700000001.000200", thread_ts=thread_ts)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def corpus() -> List[Document]:
    return [OFFBOARDING, ONBOARDING, VPN_RESET]


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    session_store = SessionStore(
        path=str(tmp_path / "sessions.json"),
        ttl_seconds=TTL_SECONDS,
        save_delay=0.01,
        feedback_grace_seconds=600,
        clock=clock,
    )
    yield session_store
    await session_store.flush()


@pytest.fixture
def document_store(corpus) -> FakeDocumentStore:
    return FakeDocumentStore(corpus)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator(reply=citing(OFFBOARDING, step=2))


@pytest.fixture
def logging_sink() -> FakeLoggingSink:
    return FakeLoggingSink()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def orchestrator(store, document_store, generator, logging_sink, transport) -> DialogueOrchestrator:
    return DialogueOrchestrator(
        store=store,
        document_store=document_store,
        generator=generator,
        logging_sink=logging_sink,
        transport=transport,
        formatter=ResponseFormatter("https://coda.io/d/SOP-Library"),
        bot_user_id="UBOT",
    )
