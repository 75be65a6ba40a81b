import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from sopbot.errors import TransportError

SLACK_API = "https://slack.com/api"
# Slack rejects requests older than five minutes; so do we
SIGNATURE_MAX_AGE = 60 * 5

logger = logging.getLogger(__name__)


class SlackTransport:
    """Posts and edits thread messages through the Slack Web API."""

    def __init__(self, bot_token: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Authorization": f"Bearer {bot_token}"})

    def _call(self, method: str, payload: Dict[str, Any], http_method: str = "post") -> Dict[str, Any]:
        url = f"{SLACK_API}/{method}"
        try:
            if http_method == "get":
                res = self.http.get(url, params=payload, timeout=self.timeout)
            else:
                res = self.http.post(url, json=payload, timeout=self.timeout)
            res.raise_for_status()
            data = res.json()
        except (requests.RequestException, ValueError) as e:
            raise TransportError(f"Slack {method} failed: {e}") from e

        if not data.get("ok"):
            raise TransportError(f"Slack {method} returned error: {data.get('error', 'unknown')}")
        return data

    def post_message(self, channel: str, text: str, thread_ts: Optional[str] = None,
                     blocks: Optional[List[Dict[str, Any]]] = None) -> str:
        payload: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        if blocks:
            payload["blocks"] = blocks
        return self._call("chat.postMessage", payload).get("ts", "")

    def update_message(self, channel: str, ts: str, text: str,
                       blocks: Optional[List[Dict[str, Any]]] = None) -> None:
        # An empty block list clears the buttons of the original prompt
        payload = {"channel": channel, "ts": ts, "text": text, "blocks": blocks or []}
        self._call("chat.update", payload)

    def get_permalink(self, channel: str, message_ts: str) -> str:
        data = self._call("chat.getPermalink", {"channel": channel, "message_ts": message_ts}, http_method="get")
        return data.get("permalink", "")


def verify_signature(signing_secret: str, timestamp: str, body: bytes, signature: str,
                     now: Optional[float] = None) -> bool:
    """Check Slack's v0 HMAC-SHA256 request signature."""
    if not timestamp or not signature:
        return False
    try:
        age = abs((now if now is not None else time.time()) - int(timestamp))
    except ValueError:
        return False
    if age > SIGNATURE_MAX_AGE:
        logger.warning("Rejected Slack request with stale timestamp")
        return False

    base = b"v0:" + timestamp.encode() + b":" + body
    expected = "v0=" + hmac.new(signing_secret.encode(), base, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)
