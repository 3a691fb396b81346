"""Document ingestion state lattice.

    uploaded → processing → {markdown_received, vectors_received} → completed
    failed is reachable from any non-terminal state.

Status only ever moves up the lattice. ``completed`` requires that both
result channels have delivered at least once. Everything here is pure so
the same rules apply whether the caller holds a row lock or not.
"""

from __future__ import annotations

from enum import Enum


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    MARKDOWN_RECEIVED = "markdown_received"
    VECTORS_RECEIVED = "vectors_received"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL = frozenset({DocumentStatus.COMPLETED, DocumentStatus.FAILED})

_RANK = {
    DocumentStatus.UPLOADED: 0,
    DocumentStatus.PROCESSING: 1,
    DocumentStatus.MARKDOWN_RECEIVED: 2,
    DocumentStatus.VECTORS_RECEIVED: 2,
    DocumentStatus.COMPLETED: 3,
}


def is_terminal(status: str | DocumentStatus) -> bool:
    return DocumentStatus(status) in TERMINAL


def can_transition(current: str | DocumentStatus, target: str | DocumentStatus) -> bool:
    """True if ``current → target`` is a forward move (or a no-op) in the lattice."""
    current, target = DocumentStatus(current), DocumentStatus(target)
    if current == target:
        return True
    if current in TERMINAL:
        return False
    if target == DocumentStatus.FAILED:
        return True
    if target == DocumentStatus.COMPLETED:
        return current in (DocumentStatus.MARKDOWN_RECEIVED, DocumentStatus.VECTORS_RECEIVED)
    return _RANK[target] > _RANK[current]


def status_after_result(
    current: str | DocumentStatus,
    markdown_seen: bool,
    vectors_seen: bool,
) -> DocumentStatus:
    """Status once a result channel has delivered.

    ``markdown_seen``/``vectors_seen`` describe the row *after* the delivery
    being applied. Terminal states are left alone.
    """
    current = DocumentStatus(current)
    if current in TERMINAL:
        return current
    if markdown_seen and vectors_seen:
        return DocumentStatus.COMPLETED
    if markdown_seen:
        target = DocumentStatus.MARKDOWN_RECEIVED
    elif vectors_seen:
        target = DocumentStatus.VECTORS_RECEIVED
    else:
        return current
    return target if can_transition(current, target) else current
