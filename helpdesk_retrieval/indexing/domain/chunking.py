"""
Record Text and Chunking
========================

Pure text functions of the indexing pipeline:
- clean_html: strip markup from legacy bodies
- format_record_with_replies: one document per record and its thread
- TextChunker: overlapping, sentence-snapped chunks
- build_contextual_prefix: deterministic header prepended to each chunk
"""

import re
from typing import Iterable, List, Optional

from helpdesk_retrieval.indexing.domain.entities import LegacyRecord, LegacyReply

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")

_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
)

SENTENCE_ENDINGS = (". ", "! ", "? ", ".\n", "!\n", "?\n")
MIN_TEXT_LENGTH = 50


def clean_html(text: Optional[str]) -> str:
    """Replace tags with spaces, decode common entities, collapse whitespace."""
    if not text:
        return ""
    cleaned = _TAG_RE.sub(" ", text)
    for entity, replacement in _ENTITIES:
        cleaned = cleaned.replace(entity, replacement)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def format_record_with_replies(record: LegacyRecord, replies: Iterable[LegacyReply]) -> str:
    """
    Render a record and its thread as one plain-text document.

    Replies with an empty body are left out. A reply carrying a customer id
    is attributed to the client, anything else to a specialist.
    """
    parts: List[str] = []

    if record.subject:
        parts.append(f"Subject: {record.subject}")

    if record.body:
        parts.append(f"\nCustomer request:\n{clean_html(record.body)}")

    replies = list(replies)
    if replies:
        parts.append("\n--- Thread ---")
        for reply in replies:
            if not reply.answer or not reply.answer.strip():
                continue
            sender = "Client" if reply.customer_id else "Specialist"
            date = f" from {reply.created_at.strftime('%d.%m.%Y')}" if reply.created_at else ""
            parts.append(f"\n[{sender}{date}]:")
            parts.append(clean_html(reply.answer))

    return "\n".join(parts)


class TextChunker:
    """
    Splits long text into overlapping chunks.

    Sizes are given in tokens and converted with a fixed chars-per-token
    ratio. A chunk boundary snaps back to the last sentence end found in
    the trailing window of the chunk.
    """

    def __init__(
        self,
        chunk_size_tokens: int = 512,
        overlap_tokens: int = 50,
        chars_per_token: int = 4,
        sentence_window: int = 200,
        min_chunk_length: int = MIN_TEXT_LENGTH
    ):
        if overlap_tokens >= chunk_size_tokens:
            raise ValueError("overlap must be smaller than chunk size")
        self.chunk_size_chars = chunk_size_tokens * chars_per_token
        self.overlap_chars = overlap_tokens * chars_per_token
        self.sentence_window = sentence_window
        self.min_chunk_length = min_chunk_length

    def split(self, text: str) -> List[str]:
        if len(text) <= self.chunk_size_chars:
            return [text]

        chunks: List[str] = []
        start = 0
        while start < len(text):
            end = start + self.chunk_size_chars

            if end < len(text):
                search_start = max(end - self.sentence_window, start)
                window = text[search_start:end]
                last_sentence_end = max(window.rfind(sep) for sep in SENTENCE_ENDINGS)
                if last_sentence_end > 0:
                    end = search_start + last_sentence_end + 1

            chunks.append(text[start:end].strip())
            if end >= len(text):
                break

            next_start = end - self.overlap_chars
            # never step backwards or stall
            start = end if next_start <= start else next_start

        return [chunk for chunk in chunks if len(chunk) > self.min_chunk_length]


def build_contextual_prefix(
    record: LegacyRecord,
    customer_name: Optional[str] = None,
    counterparty_name: Optional[str] = None,
    manager_name: Optional[str] = None
) -> str:
    """
    Header line prepended to every chunk of a record before embedding.

    Parts without data are omitted, e.g.
    ``[Request #42 | Pump leaks | Customer: Ivan Petrov (Acme LLC) | Category: repair | Manager: Anna]``
    """
    parts = [f"Request #{record.id}"]
    if record.subject:
        parts.append(record.subject.strip())
    if customer_name:
        customer = f"Customer: {customer_name}"
        if counterparty_name:
            customer += f" ({counterparty_name})"
        parts.append(customer)
    elif counterparty_name:
        parts.append(f"Customer: {counterparty_name}")
    if record.request_type:
        parts.append(f"Category: {record.request_type}")
    if manager_name:
        parts.append(f"Manager: {manager_name}")
    return "[" + " | ".join(parts) + "]"
