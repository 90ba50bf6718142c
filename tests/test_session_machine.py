import pytest
from core.errors import SessionStateError
from orchestration.session_machine import (
    can_transition,
    transition,
    transition_chapter,
)

from models import ChapterRecord, ChapterStatus, GenerationSession, SessionStatus


def test_terminal_statuses():
    assert not can_transition(SessionStatus.CANCELLED, SessionStatus.PLANNING)
    assert not can_transition(SessionStatus.COMPLETED, SessionStatus.GENERATING)
    assert can_transition(SessionStatus.COMPLETED, SessionStatus.REVISION_REQUESTED)
    assert can_transition(SessionStatus.FAILED, SessionStatus.PLANNING)


def test_transition_sets_completion_and_current_chapter():
    session = GenerationSession(blueprint_id="b")
    transition(session, SessionStatus.PLANNING)
    transition(session, SessionStatus.GENERATING, current_chapter=3)
    assert session.current_chapter == 3
    transition(session, SessionStatus.COMPLETED)
    assert session.current_chapter is None
    assert session.completed_at is not None

    transition(session, SessionStatus.REVISION_REQUESTED)
    assert session.completed_at is None


def test_invalid_transition_leaves_session_unchanged():
    session = GenerationSession(blueprint_id="b")
    with pytest.raises(SessionStateError):
        transition(session, SessionStatus.COMPLETED)
    assert session.status == SessionStatus.NOT_STARTED


def test_chapter_transitions():
    record = ChapterRecord(chapter_number=1)
    assert transition_chapter(record, ChapterStatus.GENERATING) == ChapterStatus.PENDING
    with pytest.raises(SessionStateError):
        transition_chapter(record, ChapterStatus.REVISION_REQUESTED)
    transition_chapter(record, ChapterStatus.AWAITING_APPROVAL)
    transition_chapter(record, ChapterStatus.APPROVED)
    assert record.status == ChapterStatus.APPROVED
