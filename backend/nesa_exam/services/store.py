from __future__ import annotations
import json
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ModuleOutput


NESA_MODULE = "NESA_SOFTWARE_EXAM"
SUBJECT = "Software Engineering"

# Record kinds sharing the module_outputs table are told apart by label prefix
EXAM_LABEL = "NESA HSC Exam"
ATTEMPT_LABEL = "Marked Attempt"
PROGRESS_LABEL = "In Progress"
RESERVED_LABELS = (ATTEMPT_LABEL, PROGRESS_LABEL)

ANY_OWNER = object()


def kind_prefix(kind: str) -> str:
	return f"{kind} • "


def label_for(kind: str, title: str) -> str:
	return kind_prefix(kind) + title


def is_kind(row: ModuleOutput, kind: str) -> bool:
	# Exact, case-sensitive prefix; the title after it is user text
	return (row.label or "").startswith(kind_prefix(kind))


class SessionStore:
	"""Generic create/find/update/delete over module_outputs.

	Writes are flushed, never committed; the caller commits once per request.
	"""

	def __init__(self, db: Session, module: str = NESA_MODULE) -> None:
		self.db = db
		self.module = module

	def create(
		self,
		*,
		label: str,
		output: Dict[str, Any],
		owner: Optional[str],
		input: Optional[Dict[str, Any]] = None,
		subject: Optional[str] = SUBJECT,
		record_id: Optional[str] = None,
	) -> ModuleOutput:
		row = ModuleOutput(
			id=record_id or uuid.uuid4().hex,
			module=self.module,
			subject=subject,
			label=label,
			input_json=json.dumps(input or {}),
			output_json=json.dumps(output),
			user_id=owner,
		)
		self.db.add(row)
		self.db.flush()
		return row

	def get(self, record_id: str, *, owner: Any = ANY_OWNER) -> Optional[ModuleOutput]:
		row = self.db.get(ModuleOutput, record_id)
		if row is None or row.module != self.module:
			return None
		if owner is not ANY_OWNER and row.user_id != owner:
			return None
		return row

	def find(
		self,
		*,
		owner: Any = ANY_OWNER,
		kind: Optional[str] = None,
		exclude_kinds: Iterable[str] = (),
	) -> List[ModuleOutput]:
		stmt = select(ModuleOutput).where(ModuleOutput.module == self.module)
		if owner is not ANY_OWNER:
			stmt = stmt.where(ModuleOutput.user_id == owner)
		if kind:
			stmt = stmt.where(ModuleOutput.label.startswith(kind_prefix(kind), autoescape=True))
		stmt = stmt.order_by(ModuleOutput.created_at.desc())
		exclude_kinds = tuple(exclude_kinds)
		# LIKE may ignore case, so the prefix is re-checked exactly
		return [
			row for row in self.db.scalars(stmt)
			if (kind is None or is_kind(row, kind)) and not any(is_kind(row, k) for k in exclude_kinds)
		]

	def update(self, row: ModuleOutput, *, output: Optional[Dict[str, Any]] = None, label: Optional[str] = None) -> ModuleOutput:
		if output is not None:
			row.output_json = json.dumps(output)
		if label is not None:
			row.label = label
		self.db.add(row)
		self.db.flush()
		return row

	def delete(self, row: ModuleOutput) -> None:
		self.db.delete(row)
		self.db.flush()

	@staticmethod
	def output(row: ModuleOutput) -> Dict[str, Any]:
		return json.loads(row.output_json or "{}")
