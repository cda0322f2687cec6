"""Wire contracts for exams, marked attempts and progress records.

Questions are a union discriminated on ``type`` so each marking strategy only
sees the fields legal for its variant. ``codeLanguage`` exists on
``CodeQuestion`` alone.
"""
from __future__ import annotations
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .services.normalize import normalize_question


ModuleName = Literal[
	"Secure Software Architecture",
	"Programming for the Web",
	"Software Engineering Project",
	"Automation",
]
QuestionType = Literal["mcq", "matching", "short-answer", "code", "extended"]
CodeLanguage = Literal["python", "sql", "diagram"]


class CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def dump(model: BaseModel) -> Dict[str, Any]:
	return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class QuestionOption(CamelModel):
	label: str
	value: str


class MatchingPair(CamelModel):
	left: str
	right: str


class SqlSampleData(CamelModel):
	table_name: str
	columns: List[str]
	rows: List[List[Any]] = Field(default_factory=list)


class _QuestionBase(CamelModel):
	id: str = Field(min_length=1)
	question_number: int = Field(ge=1)
	marks: PositiveInt
	modules: List[str] = Field(default_factory=list)
	prompt: str
	sample_answer: Optional[str] = None
	marking_criteria: Optional[List[str]] = None


class McqQuestion(_QuestionBase):
	type: Literal["mcq"]
	options: List[QuestionOption] = Field(min_length=2)


class MatchingQuestion(_QuestionBase):
	type: Literal["matching"]
	matching_pairs: List[MatchingPair] = Field(min_length=1)


class ShortAnswerQuestion(_QuestionBase):
	type: Literal["short-answer"]


class ExtendedQuestion(_QuestionBase):
	type: Literal["extended"]


class CodeQuestion(_QuestionBase):
	type: Literal["code"]
	code_language: CodeLanguage
	code_starter: Optional[str] = None
	expected_output: Optional[str] = None
	sql_sample_data: Optional[SqlSampleData] = None


Question = Annotated[
	Union[McqQuestion, MatchingQuestion, ShortAnswerQuestion, ExtendedQuestion, CodeQuestion],
	Field(discriminator="type"),
]


def is_diagram(question: Any) -> bool:
	return isinstance(question, CodeQuestion) and question.code_language == "diagram"


class MarkingAnswer(CamelModel):
	question_id: str
	answer: str
	criteria: List[str] = Field(default_factory=list)
	sample_response: Optional[str] = None


class MarkingGuide(CamelModel):
	question_answers: List[MarkingAnswer] = Field(default_factory=list)


class Exam(CamelModel):
	exam_title: str
	total_marks: int = Field(ge=0)
	time_allowed: int = Field(ge=0)
	instructions: List[str] = Field(default_factory=list)
	questions: List[Question]
	marking_guide: Optional[MarkingGuide] = None

	@model_validator(mode="after")
	def _check_questions(self) -> "Exam":
		ids = [q.id for q in self.questions]
		if len(set(ids)) != len(ids):
			raise ValueError("question ids must be unique")
		expected = sum(q.marks for q in self.questions)
		if self.total_marks != expected:
			raise ValueError(f"totalMarks {self.total_marks} does not equal the sum of question marks ({expected})")
		return self


class GenerateRequest(CamelModel):
	modules: List[ModuleName] = Field(min_length=1)
	question_count: int = Field(default=25, ge=15, le=30)
	include_marking_guide: bool = False
	seed: Optional[str] = None

	@field_validator("modules")
	@classmethod
	def _dedupe(cls, value: List[str]) -> List[str]:
		return list(dict.fromkeys(value))


class GenerateResponse(Exam):
	# Storage id of the saved exam; sent back as examRecordId when marking
	record_id: Optional[str] = None


class MarkBreakdownItem(CamelModel):
	criterion: str
	marks_awarded: float = Field(ge=0)
	max_marks: float = Field(ge=0)
	feedback: str = ""


class MatchResult(CamelModel):
	left: str
	correct_right: str
	user_right: Optional[str] = None
	is_correct: bool
	feedback: str = ""


class MarkRecord(CamelModel):
	question_id: str
	question_number: int
	user_answer: str = ""
	correct_answer: Optional[str] = None
	explanation: Optional[Union[str, Dict[str, str]]] = None
	model_answer: Optional[str] = None
	example_code: Optional[str] = None
	diagram_description: Optional[str] = None
	match_results: Optional[List[MatchResult]] = None
	mark_breakdown: List[MarkBreakdownItem] = Field(default_factory=list)
	total_marks: float = Field(ge=0)
	max_marks: float = Field(ge=0)
	feedback: str = ""
	self_marked_score: Optional[float] = Field(default=None, ge=0)

	@model_validator(mode="after")
	def _bounded(self) -> "MarkRecord":
		if self.total_marks > self.max_marks:
			raise ValueError("totalMarks must not exceed maxMarks")
		return self


class MarkedAttempt(CamelModel):
	exam_id: str
	exam_record_id: Optional[str] = None
	exam_title: str
	questions: List[Question]
	marks: List[MarkRecord]
	total_score: float
	total_possible: float
	percentage: int
	# Epoch milliseconds
	completed_at: int
	saved_record_id: Optional[str] = None


class UserAnswer(CamelModel):
	question_id: str
	answer: str = ""
	code: Optional[str] = None
	diagram: Optional[str] = None

	def payload(self) -> str:
		for value in (self.code, self.diagram, self.answer):
			if value and value.strip():
				return value
		return ""


class MarkRequest(CamelModel):
	exam_title: str
	exam_record_id: Optional[str] = None
	questions: List[Question] = Field(min_length=1)
	user_answers: List[UserAnswer] = Field(default_factory=list)

	@field_validator("questions", mode="before")
	@classmethod
	def _normalize(cls, value: Any) -> Any:
		if isinstance(value, list):
			return [normalize_question(q) for q in value]
		return value

	def answer_map(self) -> Dict[str, str]:
		return {a.question_id: a.payload() for a in self.user_answers}


class SelfMarkRequest(CamelModel):
	self_marked_scores: Dict[str, float] = Field(min_length=1)


class RenameRequest(CamelModel):
	label: str = Field(min_length=1, max_length=200)


class ProgressSaveRequest(CamelModel):
	exam_id: Optional[str] = None
	exam_title: str = Field(min_length=1)
	user_answers: Dict[str, Any] = Field(default_factory=dict)
	current_question_index: int = Field(default=0, ge=0)


class ProgressRecord(CamelModel):
	record_id: Optional[str] = None
	exam_id: Optional[str] = None
	exam_title: str
	user_answers: Dict[str, Any] = Field(default_factory=dict)
	current_question_index: int = 0
	# Epoch milliseconds
	last_saved: int


class RetakeResponse(CamelModel):
	progress: ProgressRecord
	questions: List[Question]


class ExamRecord(CamelModel):
	id: str
	label: Optional[str] = None
	owner_id: Optional[str] = None
	created_at: str
	exam: Exam
