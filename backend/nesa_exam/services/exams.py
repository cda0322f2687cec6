from __future__ import annotations
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..models import ModuleOutput
from ..schemas import Exam, ExamRecord, GenerateRequest, MarkingGuide, dump
from .store import EXAM_LABEL, RESERVED_LABELS, SessionStore, is_kind, label_for


logger = logging.getLogger(__name__)


class ExamLibrary:
	"""Saved (shared) exams: generated exams persisted for reuse."""

	def __init__(self, db: Session) -> None:
		self.db = db
		self.store = SessionStore(db)

	@staticmethod
	def _is_exam(row: Optional[ModuleOutput]) -> bool:
		# Renamed exams keep no prefix, so an exam is anything that is not another kind
		return row is not None and not any(is_kind(row, kind) for kind in RESERVED_LABELS)

	def _exam_row(self, record_id: str) -> ModuleOutput:
		row = self.store.get(record_id)
		if not self._is_exam(row):
			raise NotFoundError("Exam not found.")
		return row

	@staticmethod
	def _record(row: ModuleOutput) -> ExamRecord:
		return ExamRecord(
			id=row.id,
			label=row.label,
			owner_id=row.user_id,
			created_at=row.created_at.isoformat() if row.created_at else "",
			exam=Exam.model_validate(SessionStore.output(row)),
		)

	def save(self, exam: Exam, req: GenerateRequest, owner: Optional[str]) -> str:
		try:
			row = self.store.create(
				label=label_for(EXAM_LABEL, ", ".join(req.modules)),
				input=dump(req),
				output=dump(exam),
				owner=owner,
			)
			self.db.commit()
		except Exception:
			self.db.rollback()
			raise
		logger.info("[nesa.exams] saved exam %s (%d questions)", row.id, len(exam.questions))
		return row.id

	def list_shared(self) -> List[ExamRecord]:
		rows = self.store.find(exclude_kinds=RESERVED_LABELS)
		return [self._record(row) for row in rows]

	def get(self, record_id: str) -> ExamRecord:
		return self._record(self._exam_row(record_id))

	def marking_guide(self, record_id: Optional[str]) -> Optional[MarkingGuide]:
		if not record_id:
			return None
		row = self.store.get(record_id)
		if not self._is_exam(row):
			return None
		guide = SessionStore.output(row).get("markingGuide")
		return MarkingGuide.model_validate(guide) if guide else None

	def rename(self, record_id: str, label: str, *, user_id: str, admin: bool) -> ExamRecord:
		label = label.strip()
		if not label or any(marker.casefold() in label.casefold() for marker in RESERVED_LABELS):
			raise ValidationError(
				"Exam labels may not be empty or contain reserved record markers.",
				[{"path": "label", "value": label, "message": f"must not contain {', '.join(RESERVED_LABELS)}"}],
			)
		row = self._exam_row(record_id)
		if not admin and row.user_id not in (None, user_id):
			raise NotFoundError("Exam not found.")
		try:
			self.store.update(row, label=label)
			self.db.commit()
		except Exception:
			self.db.rollback()
			raise
		return self._record(row)

	def delete(self, record_id: str, *, admin: bool) -> None:
		if not admin:
			raise AuthorizationError("Only the administrator can delete shared exams.")
		row = self._exam_row(record_id)
		try:
			self.store.delete(row)
			self.db.commit()
		except Exception:
			self.db.rollback()
			raise
		logger.info("[nesa.exams] deleted exam %s", record_id)
