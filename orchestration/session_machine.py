"""Allowed status transitions for generation sessions and their chapters."""

from __future__ import annotations

import structlog
from core.errors import SessionStateError

from models import (
    ChapterRecord,
    ChapterStatus,
    GenerationSession,
    SessionStatus,
)
from models.generation import utcnow

logger = structlog.get_logger(__name__)

_S = SessionStatus
_C = ChapterStatus

SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    _S.NOT_STARTED: frozenset({_S.PLANNING, _S.CANCELLED, _S.FAILED}),
    _S.PLANNING: frozenset(
        {_S.GENERATING, _S.AWAITING_APPROVAL, _S.PAUSED, _S.COMPLETED, _S.CANCELLED, _S.FAILED}
    ),
    _S.GENERATING: frozenset(
        {_S.GENERATING, _S.AWAITING_APPROVAL, _S.PAUSED, _S.COMPLETED, _S.CANCELLED, _S.FAILED}
    ),
    _S.AWAITING_APPROVAL: frozenset(
        {_S.PLANNING, _S.GENERATING, _S.REVISION_REQUESTED, _S.COMPLETED, _S.CANCELLED, _S.FAILED}
    ),
    _S.REVISION_REQUESTED: frozenset(
        {
            _S.PLANNING,
            _S.GENERATING,
            _S.AWAITING_APPROVAL,
            _S.REVISION_REQUESTED,
            _S.PAUSED,
            _S.COMPLETED,
            _S.CANCELLED,
            _S.FAILED,
        }
    ),
    _S.PAUSED: frozenset(
        {_S.PLANNING, _S.GENERATING, _S.REVISION_REQUESTED, _S.COMPLETED, _S.CANCELLED, _S.FAILED}
    ),
    # A failed run keeps its history and may be resumed.
    _S.FAILED: frozenset({_S.PLANNING, _S.GENERATING, _S.REVISION_REQUESTED, _S.CANCELLED}),
    # Completed books may be reopened by a revision request.
    _S.COMPLETED: frozenset({_S.REVISION_REQUESTED}),
    _S.CANCELLED: frozenset(),
}

CHAPTER_TRANSITIONS: dict[ChapterStatus, frozenset[ChapterStatus]] = {
    _C.PENDING: frozenset({_C.GENERATING, _C.SKIPPED}),
    _C.GENERATING: frozenset({_C.AWAITING_APPROVAL, _C.APPROVED, _C.FAILED}),
    _C.AWAITING_APPROVAL: frozenset({_C.APPROVED, _C.REVISION_REQUESTED, _C.GENERATING}),
    _C.REVISION_REQUESTED: frozenset(
        {_C.AWAITING_APPROVAL, _C.REVISION_REQUESTED, _C.GENERATING}
    ),
    _C.APPROVED: frozenset({_C.REVISION_REQUESTED, _C.GENERATING}),
    _C.FAILED: frozenset({_C.GENERATING, _C.SKIPPED}),
    _C.SKIPPED: frozenset({_C.GENERATING}),
}

TERMINAL_STATUSES = frozenset({_S.COMPLETED, _S.CANCELLED})
RESUMABLE_STATUSES = frozenset(
    {_S.PAUSED, _S.FAILED, _S.AWAITING_APPROVAL, _S.REVISION_REQUESTED}
)
BLOCKING_CHAPTER_STATUSES = frozenset({_C.AWAITING_APPROVAL, _C.REVISION_REQUESTED})
GENERATED_CHAPTER_STATUSES = frozenset(
    {_C.AWAITING_APPROVAL, _C.REVISION_REQUESTED, _C.APPROVED}
)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS[current]


def transition(
    session: GenerationSession,
    target: SessionStatus,
    *,
    current_chapter: int | None = None,
) -> None:
    """Move ``session`` to ``target`` or raise ``SessionStateError``."""
    if not can_transition(session.status, target):
        raise SessionStateError(
            f"Session {session.id} cannot move from '{session.status.value}' "
            f"to '{target.value}'"
        )
    previous = session.status
    session.status = target
    session.current_chapter = current_chapter if target == _S.GENERATING else None
    if target in TERMINAL_STATUSES:
        session.completed_at = utcnow()
    elif previous in TERMINAL_STATUSES:
        session.completed_at = None
    session.touch()
    if previous != target:
        logger.info(
            "Session status changed",
            session_id=session.id,
            previous=previous.value,
            status=target.value,
            chapter=current_chapter,
        )


def transition_chapter(record: ChapterRecord, target: ChapterStatus) -> ChapterStatus:
    """Move a chapter record to ``target``; returns the previous status."""
    previous = record.status
    if target not in CHAPTER_TRANSITIONS[previous]:
        raise SessionStateError(
            f"Chapter {record.chapter_number} cannot move from '{previous.value}' "
            f"to '{target.value}'"
        )
    record.status = target
    return previous


def restore_chapter(record: ChapterRecord, previous: ChapterStatus) -> None:
    """Put back the status a chapter had before an abandoned attempt."""
    record.status = previous
