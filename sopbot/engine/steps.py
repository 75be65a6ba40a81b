"""
Step parser — splits an SOP body into its "## Step N" sections.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

STEP_HEADER = re.compile(r"^##\s*Step\s*(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class Step:
    header: str
    lines: Tuple[str, ...]
    number: Optional[int] = None

    @property
    def content(self) -> str:
        return "\n".join(self.lines)


def parse_steps(body: str) -> List[Step]:
    """Split a body into ordered steps; text before the first marker gets an empty header."""
    steps: List[Step] = []
    header = ""
    number: Optional[int] = None
    buffer: List[str] = []

    for line in (body or "").split("\n"):
        match = STEP_HEADER.match(line)
        if match:
            if header or buffer:
                steps.append(Step(header, tuple(buffer), number))
            header, number, buffer = line, int(match.group(1)), []
        else:
            buffer.append(line)

    if header or buffer:
        steps.append(Step(header, tuple(buffer), number))
    return steps


def reconstruct(steps: List[Step]) -> str:
    """Inverse of parse_steps."""
    lines: List[str] = []
    for step in steps:
        if step.header:
            lines.append(step.header)
        lines.extend(step.lines)
    return "\n".join(lines)


def numbered_steps(steps: List[Step]) -> List[Step]:
    """Steps that carry a marker; an unmarked document counts as one step."""
    marked = [s for s in steps if s.header]
    return marked or steps


def step_at(steps: List[Step], number: int) -> Optional[Step]:
    """The 1-indexed step of a document, or None past either end."""
    candidates = numbered_steps(steps)
    if 1 <= number <= len(candidates):
        return candidates[number - 1]
    return None


def format_steps(steps: List[Step]) -> str:
    return "\n\n".join(f"{s.header}\n{s.content}" if s.header else s.content for s in steps)
