# FILE: tests/test_attempts.py

import asyncio

import pytest

from nesa_exam.errors import NotFoundError, ValidationError
from nesa_exam.schemas import Exam, GenerateRequest, ProgressSaveRequest
from nesa_exam.services.attempts import AttemptStateManager
from nesa_exam.services.exams import ExamLibrary
from nesa_exam.services.marking import MarkingOrchestrator
from nesa_exam.services.store import SessionStore

from helpers import MODULES, FakeOracle, answer_for, grading_oracle_response, make_exam, make_questions


def _saved_exam(db, count=7):
    exam = Exam.model_validate(make_exam(count))
    req = GenerateRequest(modules=MODULES, question_count=15)
    return exam, ExamLibrary(db).save(exam, req, "student-1")


def _marked(db, exam, record_id, answers=None):
    raw = make_questions(len(exam.questions))
    answers = answers if answers is not None else {item["id"]: answer_for(item) for item in raw}
    oracle = FakeOracle(handler=grading_oracle_response)
    attempt = asyncio.run(MarkingOrchestrator(oracle).mark(exam.questions, answers, exam_title=exam.exam_title, exam_record_id=record_id))
    return AttemptStateManager(db).record(attempt, "student-1", answers)


def test_autosave_upserts_one_record_per_exam(db):
    manager = AttemptStateManager(db)
    first = manager.save_progress("student-1", ProgressSaveRequest(exam_id="rec-1", exam_title="Practice", user_answers={"q1": "A"}, current_question_index=0))
    second = manager.save_progress("student-1", ProgressSaveRequest(exam_id="rec-1", exam_title="Practice", user_answers={"q1": "B"}, current_question_index=3))
    assert first.record_id == second.record_id
    records = manager.get_progress("student-1", "rec-1")
    assert len(records) == 1
    assert records[0].user_answers == {"q1": "B"}
    assert records[0].current_question_index == 3
    assert manager.get_progress("someone-else") == []


def test_progress_keyed_by_title_when_exam_unsaved(db):
    manager = AttemptStateManager(db)
    manager.save_progress("student-1", ProgressSaveRequest(exam_title="Draft A", user_answers={"q1": "A"}))
    manager.save_progress("student-1", ProgressSaveRequest(exam_title="Draft B", user_answers={"q1": "B"}))
    manager.save_progress("student-1", ProgressSaveRequest(exam_title="Draft A", user_answers={"q1": "C"}))
    records = {r.exam_title: r for r in manager.get_progress("student-1")}
    assert set(records) == {"Draft A", "Draft B"}
    assert records["Draft A"].user_answers == {"q1": "C"}


def test_marking_retires_matching_progress_only(db):
    exam, record_id = _saved_exam(db)
    manager = AttemptStateManager(db)
    manager.save_progress("student-1", ProgressSaveRequest(exam_id=record_id, exam_title=exam.exam_title))
    manager.save_progress("student-1", ProgressSaveRequest(exam_id="other-exam", exam_title="Other"))
    attempt = _marked(db, exam, record_id)
    assert attempt.saved_record_id
    assert manager.get_progress("student-1", record_id) == []
    assert len(manager.get_progress("student-1", "other-exam")) == 1
    assert [a.saved_record_id for a in manager.list_attempts("student-1")] == [attempt.saved_record_id]


def test_attempts_are_not_listed_as_shared_exams(db):
    exam, record_id = _saved_exam(db)
    _marked(db, exam, record_id)
    AttemptStateManager(db).save_progress("student-1", ProgressSaveRequest(exam_id=record_id, exam_title="Again"))
    assert [r.id for r in ExamLibrary(db).list_shared()] == [record_id]


def test_self_mark_merges_only_the_target_question(db):
    exam, record_id = _saved_exam(db)
    attempt = _marked(db, exam, record_id)
    manager = AttemptStateManager(db)
    row = SessionStore(db).get(attempt.saved_record_id)
    before = SessionStore.output(row)["marks"]
    updated = manager.merge_self_marks(attempt.saved_record_id, "student-1", {"q6": 4})
    after = SessionStore.output(SessionStore(db).get(attempt.saved_record_id))["marks"]
    for old, new in zip(before, after):
        if old["questionId"] == "q6":
            assert new["selfMarkedScore"] == 4
            assert {k: v for k, v in new.items() if k != "selfMarkedScore"} == old
        else:
            assert new == old
    assert next(m for m in updated.marks if m.question_id == "q6").total_marks == 0


def test_self_mark_rejects_non_diagram_and_out_of_range(db):
    exam, record_id = _saved_exam(db)
    attempt = _marked(db, exam, record_id)
    manager = AttemptStateManager(db)
    with pytest.raises(ValidationError):
        manager.merge_self_marks(attempt.saved_record_id, "student-1", {"q3": 1})
    with pytest.raises(ValidationError):
        manager.merge_self_marks(attempt.saved_record_id, "student-1", {"q6": 6})
    with pytest.raises(NotFoundError):
        manager.merge_self_marks(attempt.saved_record_id, "intruder", {"q6": 1})


def test_remark_replaces_attempt_and_clears_overlay(db):
    exam, record_id = _saved_exam(db)
    attempt = _marked(db, exam, record_id)
    manager = AttemptStateManager(db)
    manager.merge_self_marks(attempt.saved_record_id, "student-1", {"q6": 3})
    oracle = FakeOracle(handler=grading_oracle_response)
    fresh = asyncio.run(manager.remark(attempt.saved_record_id, "student-1", MarkingOrchestrator(oracle)))
    assert fresh.saved_record_id == attempt.saved_record_id
    assert fresh.exam_id == attempt.exam_id
    assert all(m.self_marked_score is None for m in fresh.marks)
    assert len(manager.list_attempts("student-1")) == 1
    assert [m.user_answer for m in fresh.marks] == [m.user_answer for m in attempt.marks]


def test_retake_resets_progress_but_keeps_questions(db):
    exam, record_id = _saved_exam(db)
    attempt = _marked(db, exam, record_id)
    manager = AttemptStateManager(db)
    retake = manager.retake(attempt.saved_record_id, "student-1")
    assert retake.progress.user_answers == {}
    assert retake.progress.current_question_index == 0
    assert retake.progress.exam_id == record_id
    assert [q.id for q in retake.questions] == [q.id for q in exam.questions]


def test_delete_progress_requires_existing_record(db):
    manager = AttemptStateManager(db)
    with pytest.raises(NotFoundError):
        manager.delete_progress("student-1", "missing")
    manager.save_progress("student-1", ProgressSaveRequest(exam_id="rec-9", exam_title="Practice"))
    assert manager.delete_progress("student-1", "rec-9") == 1


def test_purge_removes_only_stale_progress(db):
    from datetime import datetime, timedelta

    from nesa_exam.cleanup import purge_stale_progress

    manager = AttemptStateManager(db)
    stale = manager.save_progress("student-1", ProgressSaveRequest(exam_id="old", exam_title="Old"))
    manager.save_progress("student-1", ProgressSaveRequest(exam_id="new", exam_title="New"))
    exam, record_id = _saved_exam(db)
    row = SessionStore(db).get(stale.record_id)
    row.updated_at = datetime.utcnow() - timedelta(days=30)
    db.commit()
    assert purge_stale_progress(db, days=7) == 1
    assert [p.exam_id for p in manager.get_progress("student-1")] == ["new"]
    assert ExamLibrary(db).get(record_id).exam.exam_title == exam.exam_title
    assert purge_stale_progress(db, days=0) == 0


def test_titles_containing_kind_names_keep_records_apart(db):
    manager = AttemptStateManager(db)
    exam, record_id = _saved_exam(db)
    exam = exam.model_copy(update={"exam_title": "In Progress Check Exam"})
    attempt = _marked(db, exam, record_id)
    manager.save_progress("student-1", ProgressSaveRequest(exam_id="rec-2", exam_title="Marked Attempt review"))
    manager.save_progress("student-1", ProgressSaveRequest(exam_id="rec-3", exam_title="marked attempt • lower case"))

    assert [a.saved_record_id for a in manager.list_attempts("student-1")] == [attempt.saved_record_id]
    assert sorted(p.exam_title for p in manager.get_progress("student-1")) == [
        "Marked Attempt review",
        "marked attempt • lower case",
    ]
    assert [r.id for r in ExamLibrary(db).list_shared()] == [record_id]


def test_marking_guide_only_read_from_exam_records(db):
    manager = AttemptStateManager(db)
    progress = manager.save_progress("student-1", ProgressSaveRequest(exam_title="Practice"))
    row = SessionStore(db).get(progress.record_id)
    SessionStore(db).update(row, output={**SessionStore.output(row), "markingGuide": {"questionAnswers": [{"questionId": "q1", "answer": "D"}]}})
    db.commit()
    assert ExamLibrary(db).marking_guide(progress.record_id) is None
