"""Per-question answer extraction over one transcript."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable

from qualflow import llm_client
from qualflow.analysis.guide import Question
from qualflow.errors import ChatError, ExtractionError

ChatFn = Callable[..., str]

DEFAULT_DOCUMENT_WINDOW = 8_000

SYSTEM_PROMPT = "You are a qualitative research analyst. Respond with a single JSON object only."

_USER_PROMPT = """\
You are analyzing a research transcript to find answers to a specific question.

QUESTION: {question}
SECTION: {section}
RESPONDENT: {respondent}

TRANSCRIPT CONTENT:
{content}

Provide:
1. A direct quote from the respondent that answers this question (if found)
2. A brief summary of their response
3. The main theme or insight from their answer
4. Your confidence level (0-100) that this answer addresses the question

Respond in this exact JSON format:
{{
  "quote": "exact quote from transcript or 'No relevant quote found'",
  "summary": "brief summary of response",
  "theme": "main theme or insight",
  "confidence": 85
}}"""


@dataclass
class Answer:
    quote: str = ""
    summary: str = ""
    theme: str = ""
    confidence: int = 0


def build_prompt(question: Question, respondent: str, content: str, window: int = DEFAULT_DOCUMENT_WINDOW) -> str:
    return _USER_PROMPT.format(
        question=question.text,
        section=question.section,
        respondent=respondent,
        content=content[:window],
    )


def extract_json_object(text: str) -> dict:
    """Parse the substring from the first ``{`` to the last ``}``.

    Raises:
        ExtractionError: If there is no such substring or it is not a JSON object.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ExtractionError(f"No JSON object in response: {text[:200]!r}")
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise ExtractionError(f"Malformed JSON in response: {exc}") from exc
    if not isinstance(data, dict):
        raise ExtractionError("Response JSON is not an object")
    return data


def parse_answer(text: str) -> Answer:
    data = extract_json_object(text)
    return Answer(
        quote=_as_text(data.get("quote")),
        summary=_as_text(data.get("summary")),
        theme=_as_text(data.get("theme")),
        confidence=_clamp_confidence(data.get("confidence")),
    )


def _as_text(value: object) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _clamp_confidence(value: object) -> int:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return int(min(100, max(0, round(number))))


class Extractor:
    """Ask the chat model one question about one transcript.

    Args:
        model: LiteLLM chat model string.
        chat_fn: ``(model, system_prompt, user_prompt, *, temperature, max_tokens) -> str``.
            Defaults to ``llm_client.complete``.
    """

    def __init__(
        self,
        model: str,
        *,
        chat_fn: ChatFn | None = None,
        temperature: float = 0.3,
        max_tokens: int = 1_000,
        document_window: int = DEFAULT_DOCUMENT_WINDOW,
    ) -> None:
        self.model = model
        self._chat_fn = chat_fn or llm_client.complete
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._window = document_window

    def extract(self, question: Question, respondent: str, content: str) -> Answer:
        """Raises ChatError or ExtractionError; callers record those as degraded rows."""
        prompt = build_prompt(question, respondent, content, self._window)
        try:
            response = self._chat_fn(
                self.model,
                SYSTEM_PROMPT,
                prompt,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except ChatError:
            raise
        except Exception as exc:
            raise ChatError(getattr(exc, "status_code", None), str(exc)) from exc
        return parse_answer(response)
