"""
Inbound text classification (rule-based, no ML).

Control words (reset, start over, done, resolved, resume) only count as
commands when they make up the whole message, so questions such as
"how do I reset my password" still reach retrieval.
"""
import re
from enum import Enum

MENTION = re.compile(r"<@[^>]+>")
PUNCTUATION = re.compile(r"[^\w\s'’]")

# Pleasantries allowed around a bare command ("ok all done, thanks!")
FILLER_WORDS = frozenset({
    "ok", "okay", "all", "please", "thanks", "thank", "you", "now",
    "it", "its", "it's", "it’s", "is", "we", "are", "we're", "we’re", "issue",
})


class IntentType(Enum):
    RESET = "reset"
    PAUSE = "pause"
    RESUME = "resume"
    NEXT_STEP = "next_step"
    PREVIOUS_STEP = "previous_step"
    WHAT_STEP = "what_step"
    QUERY = "query"
    EMPTY = "empty"


NAVIGATION = {IntentType.NEXT_STEP, IntentType.PREVIOUS_STEP, IntentType.WHAT_STEP}


def strip_mentions(text: str) -> str:
    return MENTION.sub("", text or "").strip()


def command_text(text: str) -> str:
    """The message reduced to its words, minus mentions, punctuation and filler."""
    words = PUNCTUATION.sub(" ", strip_mentions(text).lower()).split()
    return " ".join(w for w in words if w not in FILLER_WORDS)


class IntentClassifier:
    """Maps a chat message to the command it triggers, in priority order."""

    def __init__(self):
        self.reset_commands = {"start over", "reset"}
        self.pause_commands = {"done", "resolved"}
        self.resume_commands = {"resume"}
        self.navigation_patterns = [
            (r"next step", IntentType.NEXT_STEP),
            (r"previous step", IntentType.PREVIOUS_STEP),
            (r"what step", IntentType.WHAT_STEP),
        ]

    def classify(self, text: str) -> IntentType:
        query_lower = strip_mentions(text).lower()

        if not query_lower:
            return IntentType.EMPTY

        command = command_text(text)
        if command in self.reset_commands:
            return IntentType.RESET
        if command in self.pause_commands:
            return IntentType.PAUSE
        if command in self.resume_commands:
            return IntentType.RESUME

        for pattern, intent in self.navigation_patterns:
            if re.search(pattern, query_lower):
                return intent

        return IntentType.QUERY
