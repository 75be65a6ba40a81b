"""
Reply texts and Slack blocks posted back into the thread.
"""
import json
from typing import Any, Dict, List, Optional

from sopbot.engine.prompts import NO_MATCH_SENTINEL
from sopbot.engine.ranker import RankedDocument
from sopbot.engine.steps import Step
from sopbot.models import Document, FeedbackPayload, FeedbackVote

FEEDBACK_ACTION_PREFIX = "sop_feedback_"


class ResponseFormatter:
    """Formats every reply the bot posts."""

    def __init__(self, library_url: str = ""):
        self.library_url = library_url

    def _library_link(self) -> str:
        if self.library_url:
            return f"<{self.library_url}|SOP Library>"
        return "SOP Library"

    @staticmethod
    def format_no_match() -> str:
        return NO_MATCH_SENTINEL

    def format_deprecated(self, top: Document, alternatives: List[RankedDocument]) -> str:
        if not alternatives:
            return (
                f':warning: The top match SOP "{top.title}" is deprecated, and no live related SOPs were found. '
                f"Please check the {self._library_link()} for newer versions."
            )

        related = "\n".join(
            f"{i}. <{r.document.link}|{r.document.title}> "
            f"(Status: {r.document.status or 'N/A'}, Score: {r.score:g})"
            for i, r in enumerate(alternatives, 1)
        )
        return (
            f':warning: The top match SOP "{top.title}" is *deprecated*. Showing related *live* SOPs instead:\n\n'
            f"{related}\n\n"
            f"Check out these related SOPs in the {self._library_link()} — one of them may have the details you’re looking for."
        )

    @staticmethod
    def format_status_note(document: Document) -> str:
        """Contextual note for SOPs that are still being written or reviewed."""
        kind = document.status_kind
        author_note = f" Reach out to *{document.author}* for any questions." if document.author else ""

        if kind == "update_in_progress":
            return f"> 📝 *Note:* This SOP’s *update is in progress* — contents may still change.{author_note}"
        if kind == "in_progress":
            return f"> :warning: *Note:* This SOP is *still being written* and may not yet be finalized.{author_note}"
        if kind == "pending_review":
            return f"> 📝 *Note:* This SOP is *pending review* — details might be revised soon.{author_note}"
        return ""

    def format_answer(self, answer: str, document: Document) -> str:
        note = self.format_status_note(document)
        return f"{answer}\n\n{note}" if note else answer

    @staticmethod
    def format_step(direction: str, title: str, number: int, step: Optional[Step]) -> str:
        if direction == "next":
            text = f"Next step for *{title}* is Step {number}."
        elif direction == "previous":
            text = f"Previous step for *{title}* is Step {number}."
        else:
            text = f"Based on your last question, this is Step {number} from *{title}*."

        if step is None:
            return f"{text}\n_That step isn’t in this SOP — it may already be complete._"
        body = step.content.strip()
        if body:
            quoted = "\n".join(f"> {line}" for line in body.split("\n"))
            return f"{text}\n{quoted}"
        return text

    @staticmethod
    def format_reset() -> str:
        return "Got it — starting fresh! What SOP do you want to ask about?"

    @staticmethod
    def format_pause() -> str:
        return "✅ Got it — I’ll step back. Say *resume* or mention me if you need more help."

    @staticmethod
    def format_resume(title: Optional[str]) -> str:
        return f"🔄 Resumed. We were on *{title or 'your SOP'}*."

    @staticmethod
    def format_nothing_to_resume() -> str:
        return "There’s no paused conversation in this thread. Ask me a question to get started."

    @staticmethod
    def format_no_active_sop() -> str:
        return "We haven’t picked an SOP yet in this thread. Ask me a question first."

    @staticmethod
    def format_paused_hint() -> str:
        return "This conversation is paused. Say *resume* to continue, or mention me with a new question."

    @staticmethod
    def format_error() -> str:
        return "Sorry, I ran into a problem answering that. Please try again in a moment."

    @staticmethod
    def format_feedback_ack(vote: FeedbackVote) -> str:
        if vote is FeedbackVote.YES:
            return "Thanks for the feedback! Glad it helped. 🙌"
        if vote is FeedbackVote.ESCALATED:
            return "Thanks — we’ve flagged this for escalation. 🚩"
        return "Thanks for the feedback — we’ll use it to improve this SOP."

    @staticmethod
    def feedback_blocks(payload: FeedbackPayload) -> List[Dict[str, Any]]:
        """Helpfulness prompt whose buttons carry the exchange identity."""
        value = payload.model_dump_json()
        labels = {
            FeedbackVote.YES: ("👍 Yes", "primary"),
            FeedbackVote.NO: ("👎 No", None),
            FeedbackVote.ESCALATED: ("🚩 Escalate", "danger"),
        }
        buttons = []
        for vote, (label, style) in labels.items():
            button = {
                "type": "button",
                "action_id": f"{FEEDBACK_ACTION_PREFIX}{vote.value.lower()}",
                "text": {"type": "plain_text", "text": label, "emoji": True},
                "value": value,
            }
            if style:
                button["style"] = style
            buttons.append(button)

        return [
            {"type": "section", "text": {"type": "mrkdwn", "text": "Was this helpful?"}},
            {"type": "actions", "block_id": "sop_feedback", "elements": buttons},
        ]


def parse_feedback_value(action_id: str, value: str) -> Optional[tuple]:
    """Decode a button click into (vote, payload), or None if it isn't a feedback button."""
    if not action_id.startswith(FEEDBACK_ACTION_PREFIX):
        return None
    suffix = action_id[len(FEEDBACK_ACTION_PREFIX):]
    votes = {v.value.lower(): v for v in FeedbackVote}
    if suffix not in votes:
        return None
    return votes[suffix], FeedbackPayload.model_validate(json.loads(value))
