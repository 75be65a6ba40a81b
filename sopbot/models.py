import re
import time
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TAG_SEPARATORS = re.compile(r"[,;|]")


def normalize_tags(*raw_values: Any) -> List[str]:
    """Merge tag fields into one lowercased, de-duplicated list (first-seen order)."""
    tags: List[str] = []
    for raw in raw_values:
        if raw is None:
            continue
        if isinstance(raw, str):
            parts = TAG_SEPARATORS.split(raw)
        else:
            parts = []
            for item in raw:
                parts.extend(TAG_SEPARATORS.split(str(item)))
        for part in parts:
            tag = part.strip().lower()
            if tag and tag not in tags:
                tags.append(tag)
    return tags


class Document(BaseModel):
    """One SOP as fetched from the document source."""
    model_config = ConfigDict(frozen=True)

    title: str = "Untitled SOP"
    body: str = ""
    link: str = ""
    status: str = ""
    author: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _merge_tags(cls, value: Any) -> List[str]:
        return normalize_tags(value)

    @property
    def is_deprecated(self) -> bool:
        return "deprecated" in self.status.lower()

    @property
    def status_kind(self) -> Optional[str]:
        """Classify the free-text status; "update in-progress" wins over "in-progress"."""
        status = self.status.lower()
        if "deprecated" in status:
            return "deprecated"
        if "update in-progress" in status:
            return "update_in_progress"
        if "in-progress" in status:
            return "in_progress"
        if "pending review" in status:
            return "pending_review"
        return None


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"


class Session(BaseModel):
    """Conversation state for one (user, thread) pair."""
    model_config = ConfigDict(populate_by_name=True)

    state: SessionState = SessionState.IDLE
    locked_document: Optional[Document] = None
    current_step_number: Optional[int] = None
    last_log_row_id: Optional[str] = None
    updated_at: float = Field(default_factory=time.time, alias="timestamp")

    @property
    def locked_title(self) -> Optional[str]:
        return self.locked_document.title if self.locked_document else None

    def lock(self, document: Document) -> None:
        self.locked_document = document
        self.current_step_number = 1
        self.state = SessionState.ACTIVE


def session_key(user_id: str, thread_id: str) -> str:
    return f"{user_id}:{thread_id}"


# ─── Chat transport payloads ─────────────────────────────────────────

class SlackEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    user: Optional[str] = None
    text: str = ""
    channel: str = ""
    ts: str = ""
    thread_ts: Optional[str] = None
    subtype: Optional[str] = None
    bot_id: Optional[str] = None


class FeedbackVote(str, Enum):
    YES = "Yes"
    NO = "No"
    ESCALATED = "Escalated"


class FeedbackPayload(BaseModel):
    """Identity embedded in the helpfulness buttons."""
    channel: str
    thread_ts: str
    user_id: str
    row_id: Optional[str] = None


class FeedbackAction(BaseModel):
    """A helpfulness vote decoded from an interactive-component callback."""
    vote: FeedbackVote
    payload: FeedbackPayload
    voter_id: Optional[str] = None
    prompt_channel: str
    prompt_ts: str


# ─── Logging sink records ────────────────────────────────────────────

class UsageRecord(BaseModel):
    user_id: str
    channel: str
    thread_id: str
    question: str
    chosen_title: Optional[str] = None
    step_found: bool = False
    status: str
    answer_text: Optional[str] = None
