"""Discussion guide parsing: flatten a guide into an ordered question list.

Two input shapes are accepted:

- JSON: ``{"sections": [{"title", "questions": [{"id", "text"}],
  "subsections": [{"title", "questions": [...]}]}]}``, or a JSON list of
  ``{"theme", "question"}`` items.
- Plain text: lettered/roman section headers (``A. Introduction``), with
  questions as bullets, numbered items, or lines ending in ``?``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

_SECTION_RE = re.compile(r"^(?:[A-Z]|[IVX]+)\.\s+(.+)$")
_BULLET_RE = re.compile(r"^[*\-•]\s+(.+)$")
_NUMBERED_RE = re.compile(r"^\d+[.)]\s+(.+)$")

_BOILERPLATE = (
    "thank you",
    "gdpr",
    "consent",
    "confidential",
    "recording",
    "disclosure",
    "welcome",
    "agenda",
)
_MIN_QUESTION_LENGTH = 10
DEFAULT_SECTION = "General"


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    section: str = DEFAULT_SECTION


def parse_guide(guide_context: str | None) -> list[Question]:
    """Return the guide's questions in document order; empty if none are found."""
    if not guide_context or not guide_context.strip():
        return []
    try:
        data = json.loads(guide_context)
    except json.JSONDecodeError:
        return _parse_text(guide_context)
    if isinstance(data, dict):
        return _flatten_sections(data.get("sections") or [])
    if isinstance(data, list):
        return _flatten_items(data)
    return []


def _flatten_sections(sections: list) -> list[Question]:
    questions: list[Question] = []

    def add(items: list, section: str) -> None:
        for item in items or []:
            text = item.get("text") if isinstance(item, dict) else item
            if not isinstance(text, str) or not text.strip():
                continue
            qid = item.get("id") if isinstance(item, dict) else None
            questions.append(Question(id=str(qid or f"Q_{len(questions) + 1}"), text=text.strip(), section=section))

    for section in sections:
        if not isinstance(section, dict):
            continue
        title = section.get("title") or "Unknown Section"
        add(section.get("questions"), title)
        for sub in section.get("subsections") or []:
            if isinstance(sub, dict):
                add(sub.get("questions"), f"{title} - {sub.get('title', '')}".rstrip(" -"))
    return questions


def _flatten_items(items: list) -> list[Question]:
    questions: list[Question] = []
    for item in items:
        if isinstance(item, dict) and isinstance(item.get("question"), str):
            questions.append(
                Question(
                    id=f"Q_{len(questions) + 1}",
                    text=item["question"].strip(),
                    section=item.get("theme") or DEFAULT_SECTION,
                )
            )
    return questions


def _parse_text(text: str) -> list[Question]:
    questions: list[Question] = []
    section = DEFAULT_SECTION
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue

        header = _SECTION_RE.match(line)
        if header and not line.endswith("?"):
            section = header.group(1).strip()
            continue

        item = _BULLET_RE.match(line) or _NUMBERED_RE.match(line)
        candidate = item.group(1).strip() if item else (line if line.endswith("?") else None)
        if candidate is None or len(candidate) <= _MIN_QUESTION_LENGTH:
            continue
        if any(word in candidate.lower() for word in _BOILERPLATE):
            continue
        questions.append(Question(id=f"Q_{len(questions) + 1}", text=candidate, section=section))
    return questions
