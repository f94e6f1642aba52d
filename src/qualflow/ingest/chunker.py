"""Transcript chunker: sentence-aligned windows with token overlap.

Strategy:
- Normalize the transcript (collapse whitespace, drop ``[hh:mm:ss]`` /
  ``[mm:ss]`` timestamps, straighten curly quotes).
- Split into sentences on ``.``, ``!`` and ``?``; punctuation stays with its
  sentence and trailing text without a terminator is a final sentence.
- Accumulate sentences greedily up to ``chunk_tokens``. When the next sentence
  would overflow, emit the buffer and seed the next one with the trailing
  sentences whose token count is nearest ``overlap_tokens``.
- A sentence is never split, so a sentence longer than ``chunk_tokens`` yields
  an oversized chunk.

Token counting uses the ``ceil(words * 1.3)`` approximation; no tokenizer
dependency is required.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from qualflow.db.models import Chunk

_TIMESTAMP_RE = re.compile(r"\[\d{1,2}:\d{2}(?::\d{2})?\]")
_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")
_SPEAKER_RE = re.compile(r"^([A-Z][a-zA-Z\s-]+):\s*")
_PARTICIPANT_RE = re.compile(r"(Patient|HCP|Respondent)[-_]?(\d+)", re.IGNORECASE)
_NON_WORD_RE = re.compile(r"[^\w\s]")

_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})

_MODERATORS = frozenset({"Interviewer", "Moderator"})
DEFAULT_PARTICIPANT = "Participant-01"

MAX_KEYWORDS = 10
_STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by is are was were be been have
    has had do does did will would could should may might can this that these
    those i you he she it we they me him her us them
    """.split()
)


def estimate_tokens(text: str) -> int:
    """Approximate token count: ``ceil(word_count * 1.3)``; 0 for blank text."""
    words = text.split()
    return math.ceil(len(words) * 1.3) if words else 0


def normalize_transcript(content: str) -> str:
    text = _TIMESTAMP_RE.sub(" ", content)
    text = text.translate(_QUOTES)
    return _WHITESPACE_RE.sub(" ", text).strip()


@dataclass
class Sentence:
    text: str
    start: int
    end: int
    tokens: int


def split_sentences(text: str) -> list[Sentence]:
    """Split normalized *text* into sentences with character spans."""
    sentences: list[Sentence] = []
    for match in _SENTENCE_RE.finditer(text):
        raw = match.group()
        stripped = raw.strip()
        if not stripped:
            continue
        start = match.start() + (len(raw) - len(raw.lstrip()))
        sentences.append(
            Sentence(
                text=stripped,
                start=start,
                end=start + len(stripped),
                tokens=estimate_tokens(stripped),
            )
        )
    return sentences


def extract_speaker(text: str) -> str | None:
    match = _SPEAKER_RE.match(text)
    return match.group(1).strip() if match else None


def detect_participant_id(text: str, doc_name: str) -> str:
    """Participant label for a chunk.

    A non-moderator speaker wins; otherwise a ``Patient|HCP|Respondent-<n>``
    tag in the document name; otherwise ``Participant-01``.
    """
    speaker = extract_speaker(text)
    if speaker and speaker not in _MODERATORS:
        return speaker
    match = _PARTICIPANT_RE.search(doc_name)
    if match:
        return f"{match.group(1)}-{match.group(2)}"
    return DEFAULT_PARTICIPANT


def extract_keywords(text: str) -> list[str]:
    keywords: list[str] = []
    for word in _NON_WORD_RE.sub("", text.lower()).split():
        if len(word) > 3 and word not in _STOP_WORDS and word not in keywords:
            keywords.append(word)
            if len(keywords) == MAX_KEYWORDS:
                break
    return keywords


class SentenceChunker:
    """Split transcripts into overlapping, sentence-aligned chunks.

    Args:
        chunk_tokens: Target upper bound on a chunk's estimated tokens.
        overlap_tokens: Approximate token overlap between consecutive chunks.

    Raises:
        ValueError: If ``chunk_tokens < 1`` or overlap is outside ``[0, chunk_tokens)``.
    """

    def __init__(self, chunk_tokens: int = 1_200, overlap_tokens: int = 200) -> None:
        if chunk_tokens < 1:
            raise ValueError("chunk_tokens must be >= 1")
        if not 0 <= overlap_tokens < chunk_tokens:
            raise ValueError("overlap_tokens must be in [0, chunk_tokens)")
        self.chunk_tokens = chunk_tokens
        self.overlap_tokens = overlap_tokens

    def chunk(
        self,
        project_id: str,
        doc_id: str,
        content: str,
        *,
        doc_name: str = "",
        version_hash: str = "",
    ) -> list[Chunk]:
        """Split *content* into Chunk objects with sequential ``chunk_index``.

        Offsets are character positions in the normalized text. Blank input
        returns an empty list.
        """
        text = normalize_transcript(content)
        if not text:
            return []

        chunks: list[Chunk] = []
        for index, group in enumerate(self.group_sentences(split_sentences(text))):
            chunk_text = " ".join(s.text for s in group)
            chunks.append(
                Chunk(
                    project_id=project_id,
                    doc_id=doc_id,
                    chunk_index=index,
                    text=chunk_text,
                    start_offset=group[0].start,
                    end_offset=group[-1].end,
                    token_count=estimate_tokens(chunk_text),
                    version_hash=version_hash,
                    speaker=extract_speaker(chunk_text),
                    participant_id=detect_participant_id(chunk_text, doc_name),
                    keywords=extract_keywords(chunk_text),
                )
            )
        return chunks

    def group_sentences(self, sentences: list[Sentence]) -> list[list[Sentence]]:
        """Greedy accumulation with overlap seeding; returns sentence groups in order."""
        groups: list[list[Sentence]] = []
        buffer: list[Sentence] = []
        buffer_tokens = 0

        for sentence in sentences:
            if buffer and buffer_tokens + sentence.tokens > self.chunk_tokens:
                groups.append(buffer)
                buffer = self._overlap_seed(buffer)
                if sentence.tokens <= self.chunk_tokens:
                    while buffer and _tokens(buffer) + sentence.tokens > self.chunk_tokens:
                        buffer = buffer[1:]
                buffer_tokens = _tokens(buffer)
            buffer = buffer + [sentence]
            buffer_tokens += sentence.tokens

        if buffer:
            groups.append(buffer)
        return groups

    def _overlap_seed(self, buffer: list[Sentence]) -> list[Sentence]:
        """Trailing sentences whose token total is nearest ``overlap_tokens``.

        Ties prefer fewer sentences.
        """
        best_count = 0
        best_diff = self.overlap_tokens
        total = 0
        for count, sentence in enumerate(reversed(buffer), start=1):
            total += sentence.tokens
            diff = abs(total - self.overlap_tokens)
            if diff < best_diff:
                best_count, best_diff = count, diff
        return buffer[len(buffer) - best_count :] if best_count else []


def _tokens(sentences: list[Sentence]) -> int:
    return sum(s.tokens for s in sentences)
