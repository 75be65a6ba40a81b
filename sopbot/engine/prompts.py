"""
Prompt construction for the answer generator, and recovery of the SOP it chose.

The generator is asked to cite its SOP as <URL|Title>. Reading the choice back
out of free text is a fragile contract: when no citation matches a candidate,
extract_committed_document falls back to the top-ranked candidate.
"""
import logging
import re
from typing import List, Optional

from sopbot.engine.steps import format_steps, parse_steps
from sopbot.models import Document

logger = logging.getLogger(__name__)

NO_MATCH_SENTINEL = "I couldn’t find an SOP that matches your question."

CITATION = re.compile(r"<([^|<>]+)\|([^<>]+)>")

ANSWER_RULES = f"""You are a helpful support assistant for SOPs. Use the SOPs below as your knowledge base.

Rules:
1. First, identify the ONE SOP that best matches the user's question (use the title + content).
2. Then, find the SINGLE most relevant step (or sub-steps) inside that SOP, make sure it is relevant to the question asked and include the step number in the message.
3. Answer ONLY from that step. Do NOT include unrelated steps, summaries, or introductions.
4. Paraphrase concisely in instructional style, second person ("you"), with clear action verbs.
5. Always add one insight:
   - 💡 Tip (efficiency)
   - ⚠️ Warning (risk)
   - 📝 Note (context)
6. End with: "For more details and related links: <SOP URL|SOP Title>". Slack only supports <URL|Title> format. Always use this.
7. If no SOP or step matches, respond exactly: "{NO_MATCH_SENTINEL}\""""


def document_context(document: Document) -> str:
    steps = format_steps(parse_steps(document.body))
    return f"Title: {document.title}\nLink: <{document.link}|{document.title}>\n{steps}"


def build_answer_prompt(query: str, candidates: List[Document]) -> dict:
    """Instructions + context for a fresh question over the live shortlist."""
    contexts = "\n\n---\n\n".join(document_context(d) for d in candidates)
    return {
        "instructions": ANSWER_RULES,
        "context": f"User question: {query}\n\nHere are all the SOPs:\n{contexts}",
    }


def build_follow_up_prompt(query: str, document: Document, step_number: Optional[int]) -> dict:
    """Instructions + context for a follow-up restricted to the locked SOP."""
    instructions = (
        f"{ANSWER_RULES}\n\n"
        f'The user is asking a follow-up question about the same SOP titled "{document.title}". '
        "Use ONLY this SOP to answer. Answer strictly using the most relevant step. "
        "They may be asking for details, all steps, or clarification."
    )
    position = f"The user is currently on Step {step_number}.\n" if step_number else ""
    return {
        "instructions": instructions,
        "context": f"User question: {query}\n{position}\nSOP Content:\n{document_context(document)}",
    }


def is_no_match(answer: str) -> bool:
    normalized = answer.replace("'", "’").strip()
    return normalized.startswith(NO_MATCH_SENTINEL.rstrip("."))


def extract_committed_document(answer: str, candidates: List[Document]) -> Document:
    """
    Find which candidate the generator cited.

    Args:
        answer: Generator reply containing <URL|Title> citations
        candidates: Live shortlist, best first (must be non-empty)

    Returns:
        The cited candidate, matched by title then by link; the first
        candidate when no citation matches.
    """
    citations = CITATION.findall(answer or "")
    for url, title in reversed(citations):
        for doc in candidates:
            if doc.title.strip().lower() == title.strip().lower():
                return doc
    for url, title in reversed(citations):
        for doc in candidates:
            if doc.link and doc.link.strip() == url.strip():
                return doc

    logger.warning(f"Could not parse committed SOP from answer; defaulting to {candidates[0].title!r}")
    return candidates[0]
