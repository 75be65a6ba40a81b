import json
import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import parse_qs

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request

from sopbot.config import Settings, settings
from sopbot.engine.graph import DialogueOrchestrator
from sopbot.engine.responses import ResponseFormatter, parse_feedback_value
from sopbot.models import FeedbackAction, SlackEvent
from sopbot.services.coda_service import CodaDocumentStore, CodaLoggingSink
from sopbot.services.llm_service import OpenAIAnswerGenerator
from sopbot.services.session_store import SessionStore
from sopbot.services.slack_service import SlackTransport, verify_signature

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ─── Initialize Services ──────────────────────────────────────────
def build_orchestrator(config: Settings) -> DialogueOrchestrator:
    store = SessionStore(
        path=config.sessions_file,
        ttl_seconds=config.session_ttl_seconds,
        save_delay=config.save_delay_seconds,
        feedback_grace_seconds=config.feedback_grace_seconds,
    )
    document_store = CodaDocumentStore(
        api_token=config.coda_api_token,
        doc_id=config.coda_doc_id,
        table_id=config.coda_table_id,
        tag_columns=config.coda_tag_columns_list,
        timeout=config.http_timeout_seconds,
    )
    logging_sink = CodaLoggingSink(
        api_token=config.coda_api_token,
        doc_id=config.coda_doc_id,
        table_id=config.coda_log_table_id,
        timeout=config.http_timeout_seconds,
    )
    generator = OpenAIAnswerGenerator(
        api_key=config.openai_api_key,
        model=config.openai_model,
        temperature=config.openai_temperature,
        timeout=config.http_timeout_seconds,
    )
    transport = SlackTransport(config.slack_bot_token, timeout=config.http_timeout_seconds)
    return DialogueOrchestrator(
        store=store,
        document_store=document_store,
        generator=generator,
        logging_sink=logging_sink,
        transport=transport,
        formatter=ResponseFormatter(config.sop_library_url),
        bot_user_id=config.slack_bot_user_id or None,
    )


# ─── App factory ──────────────────────────────────────────────────
def create_app(orchestrator: Optional[DialogueOrchestrator] = None,
               config: Settings = settings) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bot = app.state.orchestrator or build_orchestrator(config)
        app.state.orchestrator = bot
        await bot.store.load()
        logger.info("⚡ SOP Bot is running!")
        yield
        await bot.store.close()

    app = FastAPI(title="SOP Bot", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    if not config.slack_signing_secret:
        logger.warning("SLACK_SIGNING_SECRET is not set — Slack request signatures will NOT be verified")

    async def verified_body(request: Request) -> bytes:
        body = await request.body()
        if config.slack_signing_secret and not verify_signature(
            config.slack_signing_secret,
            request.headers.get("X-Slack-Request-Timestamp", ""),
            body,
            request.headers.get("X-Slack-Signature", ""),
        ):
            raise HTTPException(status_code=401, detail="Invalid Slack signature")
        return body

    async def run_safely(coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.exception(f"Unhandled error while processing Slack event: {e}")

    # ─── Slack Events API ─────────────────────────────────────────
    @app.post("/slack/events")
    async def slack_events(request: Request, background_tasks: BackgroundTasks):
        body = await verified_body(request)
        try:
            envelope = json.loads(body)
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON body")

        if envelope.get("type") == "url_verification":
            return {"challenge": envelope.get("challenge", "")}

        # Slack redelivers when we are slow to ack; the first delivery is already being handled
        if request.headers.get("X-Slack-Retry-Num"):
            return {"ok": True}

        raw_event = envelope.get("event") or {}
        if envelope.get("type") != "event_callback" or "type" not in raw_event:
            return {"ok": True}

        event = SlackEvent.model_validate(raw_event)
        bot: DialogueOrchestrator = app.state.orchestrator
        if event.type == "app_mention":
            background_tasks.add_task(run_safely, bot.handle_mention(event))
        elif event.type == "message":
            background_tasks.add_task(run_safely, bot.handle_thread_message(event))
        return {"ok": True}

    # ─── Interactive components (helpfulness votes) ───────────────
    @app.post("/slack/actions")
    async def slack_actions(request: Request, background_tasks: BackgroundTasks):
        body = await verified_body(request)
        try:
            payload = json.loads(parse_qs(body.decode("utf-8"))["payload"][0])
        except (KeyError, IndexError, ValueError):
            raise HTTPException(status_code=400, detail="Missing interactive payload")

        if payload.get("type") != "block_actions":
            return {"ok": True}

        container = payload.get("container") or {}
        message = payload.get("message") or {}
        bot: DialogueOrchestrator = app.state.orchestrator
        for action in payload.get("actions") or []:
            try:
                decoded = parse_feedback_value(action.get("action_id", ""), action.get("value", ""))
            except ValueError as e:
                logger.warning(f"Ignoring malformed feedback action: {e}")
                continue
            if decoded is None:
                continue
            vote, feedback = decoded
            background_tasks.add_task(run_safely, bot.handle_feedback(FeedbackAction(
                vote=vote,
                payload=feedback,
                voter_id=(payload.get("user") or {}).get("id"),
                prompt_channel=container.get("channel_id") or feedback.channel,
                prompt_ts=container.get("message_ts") or message.get("ts", ""),
            )))
        return {"ok": True}

    # ─── Health ───────────────────────────────────────────────────
    @app.get("/health")
    async def health_check():
        bot = app.state.orchestrator
        return {"status": "healthy", "sessions": len(bot.store) if bot else 0}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
