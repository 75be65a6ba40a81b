"""
LangGraph State Graph — Orchestrates one conversational turn.
Nodes: classify → {reset | pause | resume | navigate | not_active | ignore |
retrieve → generate | follow_up}

Each turn runs inside SessionStore.transaction(), so turns on the same
(user, thread) are applied one at a time, in completion order.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, TypedDict

from langgraph.graph import END, StateGraph

from sopbot.engine.intents import NAVIGATION, IntentClassifier, IntentType, strip_mentions
from sopbot.engine.prompts import (build_answer_prompt, build_follow_up_prompt,
                                   extract_committed_document, is_no_match)
from sopbot.engine.ranker import RankedDocument, rank
from sopbot.engine.responses import ResponseFormatter
from sopbot.engine.steps import parse_steps, step_at
from sopbot.errors import GenerationFailure, LoggingFailure, RetrievalFailure, TransportError
from sopbot.models import (FeedbackAction, FeedbackPayload, Session, SessionState,
                           SlackEvent, UsageRecord)
from sopbot.services.session_store import SessionStore

logger = logging.getLogger(__name__)

MAX_ALTERNATIVES = 5


class TurnOutcome(str, Enum):
    SUCCESS = "success"
    FOLLOW_UP = "follow_up"
    NO_MATCH = "no_match"
    DEPRECATED = "deprecated"
    RETRIEVAL_FAILED = "retrieval_failed"
    GENERATION_FAILED = "generation_failed"
    NAVIGATED = "navigated"
    RESET = "reset"
    PAUSED = "paused"
    RESUMED = "resumed"
    HINT = "hint"
    IGNORED = "ignored"


# ─── Graph State ───────────────────────────────────────────────────
class TurnState(TypedDict):
    kind: Literal["mention", "thread"]
    user_id: str
    channel: str
    thread_id: str
    query: str
    intent: Optional[str]
    session: Session
    candidates: Optional[List[RankedDocument]]
    reply: Optional[str]
    blocks: Optional[List[Dict[str, Any]]]
    outcome: Optional[str]
    commit: bool
    usage: Optional[UsageRecord]


class DialogueOrchestrator:
    """
    Interprets inbound chat events against per-thread session state.

    Collaborators are duck-typed:
        document_store.fetch_all() -> List[Document]
        generator.generate(context, instructions) -> str
        logging_sink.record_usage(UsageRecord) -> Optional[str]
        logging_sink.record_feedback(handle, FeedbackVote)
        transport.post_message / update_message / get_permalink
    """

    def __init__(self, store: SessionStore, document_store, generator, logging_sink, transport,
                 formatter: Optional[ResponseFormatter] = None,
                 bot_user_id: Optional[str] = None):
        self.store = store
        self.document_store = document_store
        self.generator = generator
        self.logging_sink = logging_sink
        self.transport = transport
        self.formatter = formatter or ResponseFormatter()
        self.bot_user_id = bot_user_id
        self.classifier = IntentClassifier()
        self.graph = self._build_graph()

    # ─── Build Graph ───────────────────────────────────────────────
    def _build_graph(self):
        workflow = StateGraph(TurnState)

        workflow.add_node("classify", self._classify)
        workflow.add_node("reset", self._reset)
        workflow.add_node("pause", self._pause)
        workflow.add_node("resume", self._resume)
        workflow.add_node("navigate", self._navigate)
        workflow.add_node("not_active", self._not_active)
        workflow.add_node("ignore", self._ignore)
        workflow.add_node("retrieve", self._retrieve)
        workflow.add_node("generate", self._generate)
        workflow.add_node("follow_up", self._follow_up)

        workflow.set_entry_point("classify")
        workflow.add_conditional_edges(
            "classify",
            self._route_after_classify,
            {
                "reset": "reset",
                "pause": "pause",
                "resume": "resume",
                "navigate": "navigate",
                "not_active": "not_active",
                "ignore": "ignore",
                "retrieve": "retrieve",
                "follow_up": "follow_up",
            },
        )
        workflow.add_conditional_edges(
            "retrieve",
            self._route_after_retrieve,
            {"generate": "generate", "end": END},
        )
        for node in ("reset", "pause", "resume", "navigate", "not_active",
                     "ignore", "generate", "follow_up"):
            workflow.add_edge(node, END)

        return workflow.compile()

    # ─── Route Logic ───────────────────────────────────────────────
    def _route_after_classify(self, state: TurnState) -> str:
        intent = IntentType(state["intent"])
        session = state["session"]
        thread = state["kind"] == "thread"

        # Plain thread replies never open a conversation the bot isn't part of
        if thread and session.state is SessionState.IDLE:
            return "ignore"
        if intent is IntentType.EMPTY:
            return "ignore"
        if intent is IntentType.RESET:
            return "reset"
        if intent is IntentType.PAUSE:
            return "pause" if session.state is not SessionState.IDLE else "not_active"
        if intent is IntentType.RESUME:
            return "resume"
        if intent in NAVIGATION:
            return "navigate" if session.state is SessionState.ACTIVE else "not_active"
        if thread:
            return "follow_up" if session.state is SessionState.ACTIVE else "ignore"
        return "retrieve"

    @staticmethod
    def _route_after_retrieve(state: TurnState) -> str:
        return "generate" if state["candidates"] else "end"

    # ─── Node Functions ────────────────────────────────────────────
    async def _classify(self, state: TurnState) -> TurnState:
        state["intent"] = self.classifier.classify(state["query"]).value
        logger.info(f"Intent: {state['intent']} | state: {state['session'].state.value} | "
                    f"query: {state['query'][:50]}")
        return state

    async def _reset(self, state: TurnState) -> TurnState:
        state["session"] = Session()
        state["reply"] = self.formatter.format_reset()
        state["outcome"] = TurnOutcome.RESET.value
        state["commit"] = True
        return state

    async def _pause(self, state: TurnState) -> TurnState:
        session = state["session"]
        session.state = SessionState.PAUSED

        payload = FeedbackPayload(
            channel=state["channel"],
            thread_ts=state["thread_id"],
            user_id=state["user_id"],
            row_id=session.last_log_row_id,
        )
        pause_text = self.formatter.format_pause()
        state["reply"] = pause_text
        state["blocks"] = (
            [{"type": "section", "text": {"type": "mrkdwn", "text": pause_text}}]
            + self.formatter.feedback_blocks(payload)
        )
        state["outcome"] = TurnOutcome.PAUSED.value
        state["commit"] = True
        logger.info(f"Paused conversation on {session.locked_title!r}")
        return state

    async def _resume(self, state: TurnState) -> TurnState:
        session = state["session"]
        if session.state is not SessionState.PAUSED:
            state["reply"] = self.formatter.format_nothing_to_resume()
            state["outcome"] = TurnOutcome.HINT.value
            state["commit"] = False
            return state

        session.state = SessionState.ACTIVE
        state["reply"] = self.formatter.format_resume(session.locked_title)
        state["outcome"] = TurnOutcome.RESUMED.value
        state["commit"] = True
        return state

    async def _navigate(self, state: TurnState) -> TurnState:
        """Move or report the step cursor from local state only."""
        session = state["session"]
        intent = IntentType(state["intent"])
        current = session.current_step_number or 1

        if intent is IntentType.NEXT_STEP:
            current, direction = current + 1, "next"
        elif intent is IntentType.PREVIOUS_STEP:
            current, direction = max(1, current - 1), "previous"
        else:
            direction = "current"

        session.current_step_number = current
        steps = parse_steps(session.locked_document.body)
        state["reply"] = self.formatter.format_step(
            direction, session.locked_title, current, step_at(steps, current)
        )
        state["outcome"] = TurnOutcome.NAVIGATED.value
        state["commit"] = True
        return state

    async def _not_active(self, state: TurnState) -> TurnState:
        if state["session"].state is SessionState.PAUSED:
            state["reply"] = self.formatter.format_paused_hint()
        else:
            state["reply"] = self.formatter.format_no_active_sop()
        state["outcome"] = TurnOutcome.HINT.value
        state["commit"] = False
        return state

    async def _ignore(self, state: TurnState) -> TurnState:
        state["outcome"] = TurnOutcome.IGNORED.value
        state["commit"] = False
        return state

    def _usage(self, state: TurnState, status: TurnOutcome, title: Optional[str] = None,
               answer: Optional[str] = None) -> UsageRecord:
        return UsageRecord(
            user_id=state["user_id"],
            channel=state["channel"],
            thread_id=state["thread_id"],
            question=state["query"],
            chosen_title=title,
            step_found=status in (TurnOutcome.SUCCESS, TurnOutcome.FOLLOW_UP),
            status=status.value,
            answer_text=answer,
        )

    def _fail(self, state: TurnState, outcome: TurnOutcome, title: Optional[str] = None) -> TurnState:
        state["reply"] = self.formatter.format_error()
        state["outcome"] = outcome.value
        state["usage"] = self._usage(state, outcome, title)
        state["commit"] = False
        return state

    async def _retrieve(self, state: TurnState) -> TurnState:
        """Fetch the corpus, rank it, and keep only live candidates."""
        query = state["query"]
        try:
            corpus = await asyncio.to_thread(self.document_store.fetch_all)
        except RetrievalFailure as e:
            logger.error(f"Retrieval failed: {e}")
            return self._fail(state, TurnOutcome.RETRIEVAL_FAILED)

        ranked = rank(corpus, query)
        if not ranked:
            state["reply"] = self.formatter.format_no_match()
            state["outcome"] = TurnOutcome.NO_MATCH.value
            state["usage"] = self._usage(state, TurnOutcome.NO_MATCH)
            state["commit"] = False
            return state

        live = [r for r in ranked if not r.document.is_deprecated]
        if not live:
            top = ranked[0].document
            pool = [r for r in rank(corpus, query, limit=None) if not r.document.is_deprecated]
            logger.info(f"Top match {top.title!r} is deprecated; {len(pool)} live alternatives")
            state["reply"] = self.formatter.format_deprecated(top, pool[:MAX_ALTERNATIVES])
            state["outcome"] = TurnOutcome.DEPRECATED.value
            state["usage"] = self._usage(state, TurnOutcome.DEPRECATED, top.title)
            state["commit"] = False
            return state

        state["candidates"] = live
        return state

    async def _generate(self, state: TurnState) -> TurnState:
        """Answer from the live shortlist and lock the thread to the cited SOP."""
        documents = [r.document for r in state["candidates"]]
        prompt = build_answer_prompt(state["query"], documents)
        try:
            answer = await asyncio.to_thread(self.generator.generate, prompt["context"], prompt["instructions"])
        except GenerationFailure as e:
            logger.error(f"Generation failed: {e}")
            return self._fail(state, TurnOutcome.GENERATION_FAILED, documents[0].title)

        if is_no_match(answer):
            state["reply"] = answer
            state["outcome"] = TurnOutcome.NO_MATCH.value
            state["usage"] = self._usage(state, TurnOutcome.NO_MATCH, answer=answer)
            state["commit"] = False
            return state

        chosen = extract_committed_document(answer, documents)
        state["session"].lock(chosen)
        logger.info(f"Locked thread {state['thread_id']} to {chosen.title!r}")

        state["reply"] = self.formatter.format_answer(answer, chosen)
        state["outcome"] = TurnOutcome.SUCCESS.value
        state["usage"] = self._usage(state, TurnOutcome.SUCCESS, chosen.title, answer)
        state["commit"] = True
        return state

    async def _follow_up(self, state: TurnState) -> TurnState:
        """Answer against the locked SOP only; no re-ranking."""
        session = state["session"]
        document = session.locked_document
        prompt = build_follow_up_prompt(state["query"], document, session.current_step_number)
        try:
            answer = await asyncio.to_thread(self.generator.generate, prompt["context"], prompt["instructions"])
        except GenerationFailure as e:
            logger.error(f"Follow-up generation failed: {e}")
            return self._fail(state, TurnOutcome.GENERATION_FAILED, document.title)

        outcome = TurnOutcome.NO_MATCH if is_no_match(answer) else TurnOutcome.FOLLOW_UP
        state["reply"] = answer
        state["outcome"] = outcome.value
        state["usage"] = self._usage(state, outcome, document.title, answer)
        state["commit"] = True
        return state

    # ─── Side effects ──────────────────────────────────────────────
    async def _post(self, channel: str, thread_id: str, text: str,
                    blocks: Optional[List[Dict[str, Any]]] = None) -> None:
        try:
            await asyncio.to_thread(self.transport.post_message, channel, text, thread_id, blocks)
        except TransportError as e:
            logger.warning(f"Could not post reply to {channel}/{thread_id}: {e}")

    async def _record_usage(self, record: UsageRecord) -> Optional[str]:
        """Best-effort usage log; never affects the conversation."""
        try:
            return await asyncio.to_thread(self.logging_sink.record_usage, record)
        except LoggingFailure as e:
            logger.warning(f"Usage logging failed: {e}")
            return None

    # ─── Entry points ──────────────────────────────────────────────
    async def _run_turn(self, kind: str, event: SlackEvent, thread_id: str) -> TurnState:
        async with self.store.transaction(event.user, thread_id) as tx:
            initial_state: TurnState = {
                "kind": kind,
                "user_id": event.user,
                "channel": event.channel,
                "thread_id": thread_id,
                "query": strip_mentions(event.text),
                "intent": None,
                "session": tx.session,
                "candidates": None,
                "reply": None,
                "blocks": None,
                "outcome": None,
                "commit": False,
                "usage": None,
            }
            result = await self.graph.ainvoke(initial_state)
            tx.session = result["session"]

            if result["reply"]:
                await self._post(event.channel, thread_id, result["reply"], result["blocks"])

            if result["usage"] is not None:
                row_id = await self._record_usage(result["usage"])
                if row_id and result["commit"]:
                    tx.session.last_log_row_id = row_id

            if not result["commit"]:
                tx.rollback()
            return result

    async def handle_mention(self, event: SlackEvent) -> TurnState:
        """A direct mention: always top-level handling, may start a new retrieval."""
        thread_id = event.thread_ts or event.ts
        logger.info(f"User {event.user} asked: {strip_mentions(event.text)}")
        return await self._run_turn("mention", event, thread_id)

    async def handle_thread_message(self, event: SlackEvent) -> Optional[TurnState]:
        """A plain threaded reply: follow-up, navigation, pause, resume or reset only."""
        if event.bot_id or event.subtype or not event.thread_ts or not event.user:
            return None
        # Mentions arrive separately as app_mention events
        if self.bot_user_id and f"<@{self.bot_user_id}>" in event.text:
            return None
        return await self._run_turn("thread", event, event.thread_ts)

    async def handle_feedback(self, action: FeedbackAction) -> Optional[str]:
        """
        Record a helpfulness vote and acknowledge it on the original prompt.

        The vote is attributed to the log row carried in the button, else the
        thread's last log row (kept briefly after the session expires), else
        the thread permalink. Session state is never touched.
        """
        payload = action.payload
        handle = payload.row_id or self.store.feedback_handle(payload.user_id, payload.thread_ts)

        if not handle:
            try:
                handle = await asyncio.to_thread(self.transport.get_permalink, payload.channel, payload.thread_ts)
            except TransportError as e:
                logger.warning(f"Could not resolve permalink for feedback: {e}")

        if handle:
            try:
                await asyncio.to_thread(self.logging_sink.record_feedback, handle, action.vote)
            except LoggingFailure as e:
                logger.warning(f"Feedback logging failed: {e}")
        else:
            logger.warning(f"Dropping {action.vote.value} vote with no correlation handle")

        try:
            await asyncio.to_thread(
                self.transport.update_message,
                action.prompt_channel,
                action.prompt_ts,
                self.formatter.format_feedback_ack(action.vote),
            )
        except TransportError as e:
            logger.warning(f"Could not update feedback prompt: {e}")
        return handle
