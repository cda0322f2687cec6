"""Attempt and progress bookkeeping.

Marked attempts are written once by ``record`` and afterwards only receive the
additive ``selfMarkedScore`` overlay (or a full replacement on remark).
Progress records are upserted by autosave and retired when their exam is marked.
"""
from __future__ import annotations
import logging
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from ..errors import NotFoundError, ValidationError
from ..models import ModuleOutput
from ..schemas import (
	MarkedAttempt,
	ProgressRecord,
	ProgressSaveRequest,
	RetakeResponse,
	dump,
	is_diagram,
)
from .exams import ExamLibrary
from .marking import MarkingOrchestrator
from .store import ATTEMPT_LABEL, PROGRESS_LABEL, SessionStore, is_kind, label_for


logger = logging.getLogger(__name__)


def _now_ms() -> int:
	return int(time.time() * 1000)


class AttemptStateManager:
	def __init__(self, db: Session) -> None:
		self.db = db
		self.store = SessionStore(db)

	def _commit(self) -> None:
		try:
			self.db.commit()
		except Exception:
			self.db.rollback()
			raise

	# ---- marked attempts ----

	def _attempt_row(self, record_id: str, user_id: str) -> ModuleOutput:
		row = self.store.get(record_id, owner=user_id)
		if row is None or not is_kind(row, ATTEMPT_LABEL):
			raise NotFoundError("Marked attempt not found.")
		return row

	def record(self, attempt: MarkedAttempt, user_id: str, answers: Mapping[str, str]) -> MarkedAttempt:
		"""Persist a freshly marked attempt and retire the matching progress record atomically."""
		attempt = attempt.model_copy(update={"saved_record_id": uuid.uuid4().hex})
		try:
			row = self.store.create(
				label=label_for(ATTEMPT_LABEL, attempt.exam_title),
				input={"examRecordId": attempt.exam_record_id, "userAnswers": dict(answers)},
				output=dump(attempt),
				owner=user_id,
				record_id=attempt.saved_record_id,
			)
			if attempt.exam_record_id:
				for progress in self._progress_rows(user_id, attempt.exam_record_id, None):
					self.store.delete(progress)
			self.db.commit()
		except Exception:
			self.db.rollback()
			raise
		logger.info(
			"[nesa.attempts] stored attempt %s for %s: %s/%s",
			row.id, user_id, attempt.total_score, attempt.total_possible,
		)
		return attempt

	def list_attempts(self, user_id: str) -> List[MarkedAttempt]:
		rows = self.store.find(owner=user_id, kind=ATTEMPT_LABEL)
		return [MarkedAttempt.model_validate(SessionStore.output(row)) for row in rows]

	def get_attempt(self, record_id: str, user_id: str) -> MarkedAttempt:
		return MarkedAttempt.model_validate(SessionStore.output(self._attempt_row(record_id, user_id)))

	def delete_attempt(self, record_id: str, user_id: str) -> None:
		row = self._attempt_row(record_id, user_id)
		self.store.delete(row)
		self._commit()

	def merge_self_marks(self, record_id: str, user_id: str, scores: Mapping[str, float]) -> MarkedAttempt:
		row = self._attempt_row(record_id, user_id)
		output = SessionStore.output(row)
		attempt = MarkedAttempt.model_validate(output)
		diagrams = {q.id for q in attempt.questions if is_diagram(q)}
		limits = {m.question_id: m.max_marks for m in attempt.marks}
		issues: List[Dict[str, Any]] = []
		for question_id, score in scores.items():
			if question_id not in limits:
				continue
			if question_id not in diagrams:
				issues.append({"path": f"selfMarkedScores.{question_id}", "value": score, "message": "only diagram questions can be self-marked"})
			elif not 0 <= score <= limits[question_id]:
				issues.append({"path": f"selfMarkedScores.{question_id}", "value": score, "message": f"must be between 0 and {limits[question_id]}"})
		if issues:
			raise ValidationError("Invalid self-marked scores.", issues)
		# Entries for other questions are carried over untouched
		output["marks"] = [
			{**mark, "selfMarkedScore": scores[mark.get("questionId")]} if mark.get("questionId") in scores else mark
			for mark in output.get("marks", [])
		]
		self.store.update(row, output=output)
		self._commit()
		return MarkedAttempt.model_validate(output)

	async def remark(self, record_id: str, user_id: str, orchestrator: MarkingOrchestrator) -> MarkedAttempt:
		row = self._attempt_row(record_id, user_id)
		previous = MarkedAttempt.model_validate(SessionStore.output(row))
		answers = {m.question_id: m.user_answer for m in previous.marks}
		guide = ExamLibrary(self.db).marking_guide(previous.exam_record_id)
		fresh = await orchestrator.mark(
			previous.questions,
			answers,
			exam_title=previous.exam_title,
			exam_record_id=previous.exam_record_id,
			marking_guide=guide,
			exam_id=previous.exam_id,
		)
		fresh = fresh.model_copy(update={"saved_record_id": row.id})
		self.store.update(row, output=dump(fresh))
		self._commit()
		logger.info("[nesa.attempts] remarked %s: %s -> %s", record_id, previous.total_score, fresh.total_score)
		return fresh

	def retake(self, record_id: str, user_id: str) -> RetakeResponse:
		attempt = self.get_attempt(record_id, user_id)
		progress = self.save_progress(user_id, ProgressSaveRequest(
			exam_id=attempt.exam_record_id,
			exam_title=attempt.exam_title,
			user_answers={},
			current_question_index=0,
		))
		return RetakeResponse(progress=progress, questions=attempt.questions)

	# ---- in-progress sessions ----

	def _progress_rows(self, user_id: str, exam_id: Optional[str], exam_title: Optional[str]) -> List[ModuleOutput]:
		rows = self.store.find(owner=user_id, kind=PROGRESS_LABEL)
		matches = []
		for row in rows:
			data = SessionStore.output(row)
			if exam_id:
				if data.get("examId") == exam_id:
					matches.append(row)
			elif not data.get("examId") and data.get("examTitle") == exam_title:
				matches.append(row)
		return matches

	@staticmethod
	def _progress(row: ModuleOutput) -> ProgressRecord:
		return ProgressRecord.model_validate({**SessionStore.output(row), "recordId": row.id})

	def save_progress(self, user_id: str, req: ProgressSaveRequest) -> ProgressRecord:
		"""Idempotent upsert keyed by (examId, examTitle); last write wins."""
		record = ProgressRecord(
			exam_id=req.exam_id,
			exam_title=req.exam_title,
			user_answers=req.user_answers,
			current_question_index=req.current_question_index,
			last_saved=_now_ms(),
		)
		try:
			existing = self._progress_rows(user_id, req.exam_id, req.exam_title)
			if existing:
				row = existing[0]
				for duplicate in existing[1:]:
					self.store.delete(duplicate)
				self.store.update(row, output=dump(record), label=label_for(PROGRESS_LABEL, req.exam_title))
			else:
				row = self.store.create(
					label=label_for(PROGRESS_LABEL, req.exam_title),
					output=dump(record),
					owner=user_id,
				)
			self.db.commit()
		except Exception:
			self.db.rollback()
			raise
		return record.model_copy(update={"record_id": row.id})

	def get_progress(self, user_id: str, exam_id: Optional[str] = None) -> List[ProgressRecord]:
		if exam_id:
			rows = self._progress_rows(user_id, exam_id, None)
		else:
			rows = self.store.find(owner=user_id, kind=PROGRESS_LABEL)
		return [self._progress(row) for row in rows]

	def delete_progress(self, user_id: str, exam_id: str) -> int:
		rows = self._progress_rows(user_id, exam_id, None)
		if not rows:
			raise NotFoundError("No in-progress session for this exam.")
		for row in rows:
			self.store.delete(row)
		self._commit()
		return len(rows)
