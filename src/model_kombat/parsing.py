"""Pure helpers for interpreting free-form model output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, cast

from .exceptions import JudgeParsingError

CRITIQUE_LABELS = ("CRITIQUE:", "IMPROVEMENTS NEEDED:")
ANSWER_LABELS = ("IMPROVED ANSWER:", "ENHANCED ANSWER:")

_ANSWER_PATTERN = re.compile(r"(?:IMPROVED|ENHANCED)\s+ANSWER\s*:", re.IGNORECASE)
_CRITIQUE_PATTERN = re.compile(r"(?:CRITIQUE|IMPROVEMENTS\s+NEEDED)\s*:", re.IGNORECASE)
_SUGGESTION_PATTERN = re.compile(r"should|could|needs to|missing", re.IGNORECASE)

MAX_IMPROVEMENTS = 5
SIMILARITY_THRESHOLD = 0.95


@dataclass(frozen=True)
class LabeledSections:
    critique: str
    answer: str
    labeled: bool


def parse_labeled_response(text: str) -> LabeledSections:
    """Split a combined critique/answer reply.

    Without an answer label, or with nothing after it, the whole text is the
    answer. This never raises.
    """
    answer_match = _ANSWER_PATTERN.search(text)
    head = text[: answer_match.start()] if answer_match else ""
    critique_match = _CRITIQUE_PATTERN.search(head)
    critique = head[critique_match.end() :].strip() if critique_match else ""
    answer = text[answer_match.end() :].strip() if answer_match else ""
    if not answer:
        return LabeledSections(critique=critique, answer=text.strip(), labeled=False)
    return LabeledSections(critique=critique, answer=answer, labeled=True)


def word_overlap_similarity(previous: str, current: str) -> float:
    """|A ∩ B| / max(|A|, |B|) over lowercase word sets."""
    words_prev = set(previous.lower().split())
    words_new = set(current.lower().split())
    largest = max(len(words_prev), len(words_new))
    if largest == 0:
        return 1.0
    return len(words_prev & words_new) / largest


def is_converged(previous: str, current: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    return word_overlap_similarity(previous, current) > threshold


def extract_improvements(previous: str, current: str, critique: str) -> List[str]:
    """Heuristic list of what a refinement round changed, at most five entries."""
    improvements: List[str] = []
    if len(current) > len(previous) * 1.1:
        improvements.append("Added more detail and explanation")
    if "```" in current and "```" not in previous:
        improvements.append("Added code examples or formatted content")
    if len(current.split("\n")) > len(previous.split("\n")):
        improvements.append("Improved structure and formatting")
    for line in critique.split("\n"):
        if _SUGGESTION_PATTERN.search(line):
            improvements.append(f"Addressed: {line.strip()[:100]}...")
    return improvements[:MAX_IMPROVEMENTS]


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
        return True
    except json.JSONDecodeError:
        return False


def _find_json_snippet(candidate: str, start: int) -> str | None:
    depth = 0
    for idx in range(start, len(candidate)):
        char = candidate[idx]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                snippet = candidate[start : idx + 1]
                if _is_json(snippet):
                    return snippet
    return None


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first JSON object embedded in ``text``.

    Handles bare JSON, JSON inside code fences and JSON surrounded by prose.
    """
    candidate = text.strip()
    if not candidate:
        raise JudgeParsingError("Empty judge response content.", raw_response=text)

    snippet: str | None = candidate if _is_json(candidate) else None
    if snippet is None:
        start = candidate.find("{")
        while start != -1 and snippet is None:
            snippet = _find_json_snippet(candidate, start)
            start = candidate.find("{", start + 1)
    if snippet is None:
        raise JudgeParsingError("No JSON object found in judge response.", raw_response=text)

    data: Any = json.loads(snippet)
    if not isinstance(data, dict):
        raise JudgeParsingError("Judge response JSON is not an object.", raw_response=text)
    return cast(Dict[str, Any], data)


__all__ = [
    "ANSWER_LABELS",
    "CRITIQUE_LABELS",
    "LabeledSections",
    "MAX_IMPROVEMENTS",
    "SIMILARITY_THRESHOLD",
    "extract_improvements",
    "extract_json_object",
    "is_converged",
    "parse_labeled_response",
    "word_overlap_similarity",
]
