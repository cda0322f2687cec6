from __future__ import annotations
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..gemini_client import CompletionOracle, get_oracle
from ..schemas import (
	ExamRecord,
	GenerateRequest,
	GenerateResponse,
	MarkedAttempt,
	MarkRequest,
	ProgressRecord,
	ProgressSaveRequest,
	RenameRequest,
	RetakeResponse,
	SelfMarkRequest,
)
from ..services.attempts import AttemptStateManager
from ..services.exams import ExamLibrary
from ..services.generator import ExamGenerator
from ..services.marking import MarkingOrchestrator
from .auth import User, get_current_user, get_optional_user, is_admin


router = APIRouter(prefix="/nesa", tags=["nesa_exam"])


@router.post("/generate", response_model=GenerateResponse, response_model_exclude_none=True)
async def generate_exam(
	req: GenerateRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	oracle: CompletionOracle = Depends(get_oracle),
):
	exam = await ExamGenerator(oracle).generate(req)
	record_id = ExamLibrary(db).save(exam, req, user.id)
	return GenerateResponse(**exam.model_dump(), record_id=record_id)


@router.get("/exams")
async def list_exams(user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
	records = ExamLibrary(db).list_shared()
	return {"exams": [r.model_dump(mode="json", by_alias=True, exclude_none=True) for r in records]}


@router.get("/exams/{record_id}", response_model=ExamRecord, response_model_exclude_none=True)
async def get_exam(record_id: str, user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)):
	return ExamLibrary(db).get(record_id)


@router.put("/exams/{record_id}", response_model=ExamRecord, response_model_exclude_none=True)
async def rename_exam(record_id: str, req: RenameRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return ExamLibrary(db).rename(record_id, req.label, user_id=user.id, admin=is_admin(user))


@router.delete("/exams/{record_id}")
async def delete_exam(record_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	ExamLibrary(db).delete(record_id, admin=is_admin(user))
	return {"ok": True}


@router.post("/mark", response_model=MarkedAttempt, response_model_exclude_none=True)
async def mark_exam(
	req: MarkRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	oracle: CompletionOracle = Depends(get_oracle),
):
	answers = req.answer_map()
	guide = ExamLibrary(db).marking_guide(req.exam_record_id)
	attempt = await MarkingOrchestrator(oracle).mark(
		req.questions,
		answers,
		exam_title=req.exam_title,
		exam_record_id=req.exam_record_id,
		marking_guide=guide,
	)
	return AttemptStateManager(db).record(attempt, user.id, answers)


@router.get("/attempts")
async def list_attempts(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
	attempts = AttemptStateManager(db).list_attempts(user.id)
	return {"attempts": [a.model_dump(mode="json", by_alias=True, exclude_none=True) for a in attempts]}


@router.get("/attempts/{record_id}", response_model=MarkedAttempt, response_model_exclude_none=True)
async def get_attempt(record_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return AttemptStateManager(db).get_attempt(record_id, user.id)


@router.patch("/attempts/{record_id}", response_model=MarkedAttempt, response_model_exclude_none=True)
async def self_mark_attempt(record_id: str, req: SelfMarkRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return AttemptStateManager(db).merge_self_marks(record_id, user.id, req.self_marked_scores)


@router.delete("/attempts/{record_id}")
async def delete_attempt(record_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	AttemptStateManager(db).delete_attempt(record_id, user.id)
	return {"ok": True}


@router.post("/attempts/{record_id}/remark", response_model=MarkedAttempt, response_model_exclude_none=True)
async def remark_attempt(
	record_id: str,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	oracle: CompletionOracle = Depends(get_oracle),
):
	return await AttemptStateManager(db).remark(record_id, user.id, MarkingOrchestrator(oracle))


@router.post("/attempts/{record_id}/retake", response_model=RetakeResponse, response_model_exclude_none=True)
async def retake_attempt(record_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return AttemptStateManager(db).retake(record_id, user.id)


@router.get("/progress")
async def get_progress(
	exam_id: Optional[str] = Query(default=None, alias="examId"),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
) -> Dict[str, Any]:
	records = AttemptStateManager(db).get_progress(user.id, exam_id)
	body = [r.model_dump(mode="json", by_alias=True, exclude_none=True) for r in records]
	if exam_id:
		return {"progress": body[0] if body else None}
	return {"progress": body}


@router.post("/progress", response_model=ProgressRecord, response_model_exclude_none=True)
async def save_progress(req: ProgressSaveRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return AttemptStateManager(db).save_progress(user.id, req)


@router.delete("/progress")
async def delete_progress(
	exam_id: str = Query(alias="examId"),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	removed = AttemptStateManager(db).delete_progress(user.id, exam_id)
	return {"ok": True, "removed": removed}
