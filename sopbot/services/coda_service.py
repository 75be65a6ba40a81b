import logging
import time
from typing import Any, Dict, List, Optional

import requests

from sopbot.errors import LoggingFailure, RetrievalFailure
from sopbot.models import Document, FeedbackVote, UsageRecord, normalize_tags

CODA_API = "https://coda.io/apis/v1"

logger = logging.getLogger(__name__)


class CodaService:
    """Thin wrapper around the Coda REST API for one doc."""

    def __init__(self, api_token: str, doc_id: str, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.doc_id = doc_id
        self.timeout = timeout
        self.http = session or requests.Session()
        self.http.headers.update({"Authorization": f"Bearer {api_token}"})

    def rows_url(self, table_id: str) -> str:
        return f"{CODA_API}/docs/{self.doc_id}/tables/{table_id}/rows"


class CodaDocumentStore(CodaService):
    """Pulls the full SOP table on every call; no caching between requests."""

    def __init__(self, api_token: str, doc_id: str, table_id: str,
                 tag_columns: Optional[List[str]] = None, **kwargs):
        super().__init__(api_token, doc_id, **kwargs)
        self.table_id = table_id
        self.tag_columns = tag_columns if tag_columns is not None else ["Tags Bot Result", "Tags"]

    def _row_to_document(self, row: Dict[str, Any]) -> Document:
        values = row.get("values") or {}
        return Document(
            title=values.get("Title") or "Untitled SOP",
            body=values.get("Content") or "",
            link=values.get("SOP Traceable Link") or "",
            status=values.get("Status") or "",
            author=values.get("Author") or None,
            tags=normalize_tags(*(values.get(col) for col in self.tag_columns)),
        )

    def fetch_all(self) -> List[Document]:
        """Fetch every SOP row, following nextPageLink until exhausted."""
        url: Optional[str] = self.rows_url(self.table_id)
        params: Optional[dict] = {"useColumnNames": "true"}
        rows: List[Dict[str, Any]] = []

        try:
            while url:
                res = self.http.get(url, params=params, timeout=self.timeout)
                res.raise_for_status()
                data = res.json()
                rows.extend(data.get("items") or [])
                # nextPageLink already carries the query string
                url, params = data.get("nextPageLink"), None
            documents = [self._row_to_document(r) for r in rows]
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Failed to fetch SOPs from Coda: {e}")
            raise RetrievalFailure(f"Could not load SOPs: {e}") from e

        logger.info(f"Loaded {len(documents)} SOPs from Coda")
        return documents


class CodaLoggingSink(CodaService):
    """Writes usage rows and helpfulness votes to a Coda log table."""

    def __init__(self, api_token: str, doc_id: str, table_id: str, **kwargs):
        super().__init__(api_token, doc_id, **kwargs)
        self.table_id = table_id

    @staticmethod
    def _cells(values: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [{"column": k, "value": v} for k, v in values.items() if v is not None]

    def record_usage(self, record: UsageRecord) -> Optional[str]:
        """Insert a usage row; returns the new row id when Coda reports one."""
        cells = self._cells({
            "User": record.user_id,
            "Channel": record.channel,
            "Thread": record.thread_id,
            "Question": record.question,
            "SOP Title": record.chosen_title,
            "Step Found": record.step_found,
            "Status": record.status,
            "Answer": record.answer_text,
            "Timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        })
        try:
            res = self.http.post(
                self.rows_url(self.table_id),
                json={"rows": [{"cells": cells}]},
                timeout=self.timeout,
            )
            res.raise_for_status()
            added = res.json().get("addedRowIds") or []
        except (requests.RequestException, ValueError) as e:
            raise LoggingFailure(f"Could not record usage: {e}") from e

        return added[0] if added else None

    def record_feedback(self, handle: str, helpful: FeedbackVote) -> None:
        """Attach a vote to a usage row (by row id) or to a thread permalink (upsert)."""
        try:
            if handle.startswith("http"):
                res = self.http.post(
                    self.rows_url(self.table_id),
                    json={
                        "rows": [{"cells": self._cells({"Permalink": handle, "Helpful": helpful.value})}],
                        "keyColumns": ["Permalink"],
                    },
                    timeout=self.timeout,
                )
            else:
                res = self.http.put(
                    f"{self.rows_url(self.table_id)}/{handle}",
                    json={"row": {"cells": self._cells({"Helpful": helpful.value})}},
                    timeout=self.timeout,
                )
            res.raise_for_status()
        except requests.RequestException as e:
            raise LoggingFailure(f"Could not record feedback for {handle}: {e}") from e

        logger.info(f"Recorded feedback {helpful.value} for {handle}")
