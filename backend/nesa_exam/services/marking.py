from __future__ import annotations
import json
import logging
import math
import re
import time
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..errors import ValidationError
from ..gemini_client import CompletionOracle
from ..schemas import (
	CodeQuestion,
	MarkBreakdownItem,
	MarkedAttempt,
	MarkingAnswer,
	MarkingGuide,
	MarkRecord,
	MatchingQuestion,
	MatchResult,
	McqQuestion,
	is_diagram,
)
from ..settings import settings
from .integrity import apply_override


logger = logging.getLogger(__name__)

WRITTEN_TYPES = ("short-answer", "extended")
NOT_ATTEMPTED = "Question not attempted."

MARKER_SYSTEM_PROMPT = (
	"You are a strict NESA NSW HSC Software Engineering marker. Mark exactly as the official marking "
	"guidelines would: award marks only for evidence present in the student's response, never for intent. "
	"Respond with a single JSON object and nothing else."
)


def _num(value: Any, default: float = 0.0) -> float:
	if isinstance(value, bool):
		return default
	if isinstance(value, (int, float)):
		return float(value)
	try:
		return float(str(value).strip())
	except (TypeError, ValueError):
		return default


def _clamp(value: float, low: float, high: float) -> float:
	return max(low, min(high, value))


def _text(value: Any) -> Optional[str]:
	if value is None:
		return None
	if isinstance(value, list):
		value = "\n".join(str(v) for v in value)
	text = str(value).strip()
	return text or None


def _breakdown(raw: Any, max_marks: float) -> List[MarkBreakdownItem]:
	items: List[MarkBreakdownItem] = []
	if not isinstance(raw, list):
		return items
	for entry in raw:
		if not isinstance(entry, dict):
			continue
		item_max = _clamp(_num(entry.get("maxMarks"), max_marks), 0.0, max_marks)
		items.append(MarkBreakdownItem(
			criterion=_text(entry.get("criterion")) or "Criterion",
			marks_awarded=_clamp(_num(entry.get("marksAwarded")), 0.0, item_max),
			max_marks=item_max,
			feedback=_text(entry.get("feedback")) or "",
		))
	return items


def _total(data: Dict[str, Any], breakdown: Sequence[MarkBreakdownItem], max_marks: float) -> float:
	fallback = sum(item.marks_awarded for item in breakdown)
	return _clamp(_num(data.get("totalMarks"), fallback), 0.0, max_marks)


def _criteria(question: Any, key: Optional[MarkingAnswer]) -> List[str]:
	if question.marking_criteria:
		return list(question.marking_criteria)
	if key is not None and key.criteria:
		return list(key.criteria)
	return []


def _sample(question: Any, key: Optional[MarkingAnswer]) -> Optional[str]:
	if question.sample_answer:
		return question.sample_answer
	if key is not None:
		return key.sample_response or key.answer
	return None


def _bullets(lines: Sequence[str]) -> str:
	return "\n".join(f"- {line}" for line in lines) if lines else "- Use the official NESA marking standards for this mark allocation."


def calculate_percentage(score: float, possible: float) -> int:
	# Half-up: 62.5 -> 63
	if possible <= 0:
		return 0
	return int(math.floor(100 * score / possible + 0.5))


class MarkingStrategy(ABC):
	"""Marks one question variant; returns a MarkRecord with 0 <= totalMarks <= maxMarks."""

	def __init__(self, oracle: Optional[CompletionOracle] = None, *, temperature: Optional[float] = None) -> None:
		self.oracle = oracle
		self.temperature = settings.marking_temperature if temperature is None else temperature

	@abstractmethod
	async def mark(self, question: Any, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		...

	async def _ask(self, prompt: str) -> Dict[str, Any]:
		if self.oracle is None:
			raise RuntimeError(f"{type(self).__name__} needs a completion oracle")
		data = await self.oracle.complete(
			[
				{"role": "system", "content": MARKER_SYSTEM_PROMPT},
				{"role": "user", "content": prompt},
			],
			response_format="json",
			temperature=self.temperature,
		)
		if not isinstance(data, dict):
			raise ValidationError("Oracle returned a non-object marking payload.", upstream=True)
		return data


class DiagramStrategy(MarkingStrategy):
	async def mark(self, question: CodeQuestion, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		expected = question.expected_output or _sample(question, key) or "the diagram described in the question"
		return MarkRecord(
			question_id=question.id,
			question_number=question.question_number,
			user_answer=answer,
			diagram_description=expected,
			total_marks=0.0,
			max_marks=float(question.marks),
			feedback=(
				"Diagrams are self-assessed. Compare your diagram with the expected output below and enter the "
				f"mark you believe it earns (out of {question.marks}).\n\nExpected: {expected}"
			),
		)


class UnansweredStrategy(MarkingStrategy):
	async def mark(self, question: Any, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		return MarkRecord(
			question_id=question.id,
			question_number=question.question_number,
			user_answer=answer or "",
			total_marks=0.0,
			max_marks=float(question.marks),
			feedback=NOT_ATTEMPTED,
		)


def option_label(value: Optional[str], question: McqQuestion) -> Optional[str]:
	"""Resolve a learner choice or answer key ("B", "B)", "(b) text", or the option text) to a label."""
	if not value:
		return None
	text = value.strip()
	labels = {o.label.strip().upper(): o.label for o in question.options}
	if text.upper() in labels:
		return labels[text.upper()]
	prefix = re.match(r"^\(?([A-Za-z])(?:[).:\s]|$)", text)
	if prefix and prefix.group(1).upper() in labels:
		return labels[prefix.group(1).upper()]
	for option in question.options:
		if text.casefold() == option.value.strip().casefold():
			return option.label
	return None


class McqStrategy(MarkingStrategy):
	def _prompt(self, question: McqQuestion, chosen: str, correct: Optional[str]) -> str:
		options = "\n".join(f"{o.label}. {o.value}" for o in question.options)
		correct_line = f"Correct option: {correct}\n" if correct else "Determine the single correct option.\n"
		return (
			f"Multiple choice question ({question.marks} mark{'s' if question.marks != 1 else ''}):\n{question.prompt}\n\n"
			f"Options:\n{options}\n\n"
			f"{correct_line}"
			f"Student selected: {chosen}\n\n"
			"Explain EVERY option: why the correct option is correct and why each other option is incorrect.\n"
			f"Award {question.marks} marks if and only if the student's option is the correct option, otherwise 0.\n"
			"Return JSON with keys: correctAnswer (the option label), explanation (object mapping every option label to "
			"its explanation), totalMarks (number), feedback (string addressed to the student)."
		)

	async def mark(self, question: McqQuestion, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		chosen = option_label(answer, question) or answer.strip()
		known = option_label(question.sample_answer, question) or option_label(key.answer if key else None, question)
		data = await self._ask(self._prompt(question, chosen, known))
		correct = known or option_label(_text(data.get("correctAnswer")), question)
		if correct is None:
			raise ValidationError(
				"Oracle did not identify a valid correct option.",
				[{"path": "correctAnswer", "value": data.get("correctAnswer"), "message": "not an option label"}],
				upstream=True,
			)
		max_marks = float(question.marks)
		awarded = max_marks if chosen == correct else 0.0
		explanation = data.get("explanation")
		if isinstance(explanation, dict):
			explanation = {str(k): str(v) for k, v in explanation.items()}
		else:
			explanation = _text(explanation)
		verdict = "Correct option selected." if awarded else f"Incorrect; the correct option is {correct}."
		return MarkRecord(
			question_id=question.id,
			question_number=question.question_number,
			user_answer=answer,
			correct_answer=correct,
			explanation=explanation,
			mark_breakdown=[MarkBreakdownItem(criterion="Correct option", marks_awarded=awarded, max_marks=max_marks, feedback=verdict)],
			total_marks=awarded,
			max_marks=max_marks,
			feedback=_text(data.get("feedback")) or verdict,
		)


def parse_matches(answer: str) -> Dict[str, Any]:
	"""Decode a match map: ``{left: right}`` by text, or ``{"0": 2}`` by pair index."""
	try:
		data = json.loads(answer)
	except (TypeError, ValueError) as err:
		raise ValidationError(
			"Matching answers must be a JSON object of left to right matches.",
			[{"path": "answer", "value": answer[:200], "message": str(err)}],
		) from err
	if isinstance(data, list):
		data = {str(e.get("left")): e.get("right") for e in data if isinstance(e, dict)}
	if not isinstance(data, dict):
		raise ValidationError(
			"Matching answers must be a JSON object of left to right matches.",
			[{"path": "answer", "value": answer[:200], "message": "not an object"}],
		)
	return {str(k): v for k, v in data.items()}


def _index(value: Any, size: int) -> Optional[int]:
	if isinstance(value, bool):
		return None
	if isinstance(value, int):
		position = value
	elif isinstance(value, str) and value.strip().isdigit():
		position = int(value.strip())
	else:
		return None
	return position if 0 <= position < size else None


def resolve_matches(question: MatchingQuestion, matches: Mapping[str, Any]) -> Dict[str, Optional[str]]:
	"""Map each chosen match to ``{left text: right text}``.

	Keys and values that name a pair by text win over reading them as indices.
	"""
	pairs = question.matching_pairs
	lefts = {p.left for p in pairs}
	rights = {p.right for p in pairs}
	resolved: Dict[str, Optional[str]] = {}
	for key, value in matches.items():
		left = key
		if key not in lefts:
			position = _index(key, len(pairs))
			if position is not None:
				left = pairs[position].left
		if value is None or value == "":
			resolved[left] = None
			continue
		right = str(value)
		if right not in rights:
			position = _index(value, len(pairs))
			if position is not None:
				right = pairs[position].right
		resolved[left] = right
	return resolved


def is_blank_match(answer: str) -> bool:
	"""True for an untouched matching question (no pair chosen)."""
	try:
		data = json.loads(answer)
	except (TypeError, ValueError):
		return False
	if isinstance(data, list):
		data = {i: e.get("right") if isinstance(e, dict) else e for i, e in enumerate(data)}
	if not isinstance(data, dict):
		return False
	return all(v is None or v == "" for v in data.values())


def _same(a: Optional[str], b: Optional[str]) -> bool:
	return a is not None and b is not None and a.strip().casefold() == b.strip().casefold()


class MatchingStrategy(MarkingStrategy):
	"""Pair correctness is decided locally; the oracle supplies feedback.

	``partial_credit`` chooses the score: ``proportional`` floors marks by the
	share of correct pairs, ``all_or_nothing`` needs every pair, ``oracle``
	keeps the oracle's own total.
	"""

	def __init__(self, oracle: Optional[CompletionOracle] = None, *, temperature: Optional[float] = None, partial_credit: Optional[str] = None) -> None:
		super().__init__(oracle, temperature=temperature)
		self.partial_credit = partial_credit or settings.matching_partial_credit

	def _prompt(self, question: MatchingQuestion, results: List[MatchResult]) -> str:
		lines = "\n".join(
			f"- {r.left}: correct = {r.correct_right!r}; student = {r.user_right!r} ({'correct' if r.is_correct else 'incorrect'})"
			for r in results
		)
		return (
			f"Matching question ({question.marks} marks):\n{question.prompt}\n\n"
			f"Pairs and the student's matches:\n{lines}\n\n"
			"For every pair, give one sentence of feedback explaining the correct match.\n"
			"Return JSON with keys: matchResults (array of {left, feedback}), markBreakdown (array of "
			"{criterion, marksAwarded, maxMarks, feedback}), totalMarks (number), feedback (string)."
		)

	def _score(self, question: MatchingQuestion, correct: int, data: Dict[str, Any], breakdown: List[MarkBreakdownItem]) -> float:
		pairs = len(question.matching_pairs)
		if self.partial_credit == "oracle":
			return _total(data, breakdown, float(question.marks))
		if self.partial_credit == "all_or_nothing":
			return float(question.marks) if correct == pairs else 0.0
		return float(math.floor(question.marks * correct / pairs))

	async def mark(self, question: MatchingQuestion, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		matches = resolve_matches(question, parse_matches(answer))
		results = [
			MatchResult(
				left=pair.left,
				correct_right=pair.right,
				user_right=matches.get(pair.left),
				is_correct=_same(matches.get(pair.left), pair.right),
			)
			for pair in question.matching_pairs
		]
		data = await self._ask(self._prompt(question, results))
		notes = {}
		for entry in data.get("matchResults") or []:
			if isinstance(entry, dict) and entry.get("left") is not None:
				notes[str(entry["left"])] = _text(entry.get("feedback")) or ""
		results = [r.model_copy(update={"feedback": notes.get(r.left, "")}) for r in results]
		correct = sum(1 for r in results if r.is_correct)
		max_marks = float(question.marks)
		oracle_breakdown = _breakdown(data.get("markBreakdown"), max_marks)
		total = self._score(question, correct, data, oracle_breakdown)
		if self.partial_credit == "oracle" and oracle_breakdown:
			breakdown = oracle_breakdown
		else:
			breakdown = [MarkBreakdownItem(
				criterion="Correct matches",
				marks_awarded=total,
				max_marks=max_marks,
				feedback=f"{correct} of {len(results)} pairs matched correctly.",
			)]
		return MarkRecord(
			question_id=question.id,
			question_number=question.question_number,
			user_answer=answer,
			match_results=results,
			mark_breakdown=breakdown,
			total_marks=total,
			max_marks=max_marks,
			feedback=_text(data.get("feedback")) or f"{correct} of {len(results)} pairs matched correctly.",
		)


class WrittenStrategy(MarkingStrategy):
	def _prompt(self, question: Any, answer: str, key: Optional[MarkingAnswer]) -> str:
		sample = _sample(question, key)
		sample_block = f"Sample answer:\n{sample}\n\n" if sample else ""
		kind = "Extended response" if question.type == "extended" else "Short answer"
		return (
			f"{kind} question ({question.marks} marks):\n{question.prompt}\n\n"
			f"Marking criteria:\n{_bullets(_criteria(question, key))}\n\n"
			f"{sample_block}"
			f"Student response:\n\"\"\"\n{answer}\n\"\"\"\n\n"
			"STRICT RUBRIC:\n"
			"- Award marks only for correct, relevant technical content written in the response.\n"
			"- First decide whether the response is a genuine attempt. Award 0 marks for every criterion if the response "
			"is random characters, keyboard mashing (e.g. 'asdf', 'qwer', 'jkl;'), a character repeated many times, "
			"words that are not real words, copied question text, or text unrelated to the question.\n"
			"- Do not give partial credit for length, effort or vaguely related keywords.\n"
			f"- totalMarks must equal the sum of marksAwarded and never exceed {question.marks}.\n\n"
			"Return JSON with keys: modelAnswer (a full-mark exemplar response), markBreakdown (array of "
			"{criterion, marksAwarded, maxMarks, feedback}), totalMarks (number), feedback (string addressed to the student)."
		)

	async def mark(self, question: Any, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		data = await self._ask(self._prompt(question, answer, key))
		max_marks = float(question.marks)
		breakdown = _breakdown(data.get("markBreakdown"), max_marks)
		return MarkRecord(
			question_id=question.id,
			question_number=question.question_number,
			user_answer=answer,
			model_answer=_text(data.get("modelAnswer")),
			mark_breakdown=breakdown,
			total_marks=_total(data, breakdown, max_marks),
			max_marks=max_marks,
			feedback=_text(data.get("feedback")) or "",
		)


def render_sample_table(question: CodeQuestion) -> str:
	data = question.sql_sample_data
	if data is None:
		return ""
	rows = "\n".join(" | ".join("NULL" if cell is None else str(cell) for cell in row) for row in data.rows)
	return f"Sample data (table {data.table_name}):\n{' | '.join(data.columns)}\n{rows}\n\n"


class CodeStrategy(MarkingStrategy):
	def _prompt(self, question: CodeQuestion, answer: str, key: Optional[MarkingAnswer]) -> str:
		language = "Python" if question.code_language == "python" else "SQL"
		starter = f"Starter code:\n```\n{question.code_starter}\n```\n\n" if question.code_starter else ""
		expected = f"Expected behaviour:\n{question.expected_output}\n\n" if question.expected_output else ""
		return (
			f"{language} coding question ({question.marks} marks):\n{question.prompt}\n\n"
			f"{starter}{render_sample_table(question)}{expected}"
			f"Marking criteria:\n{_bullets(_criteria(question, key))}\n\n"
			f"Student code:\n```\n{answer}\n```\n\n"
			"STRICT RUBRIC:\n"
			f"- Award 0 marks if the code is non-functional, is not valid {language}, is only the unchanged starter code, "
			"or is gibberish/keyboard mashing.\n"
			"- Award marks only for logic that would actually produce the expected behaviour.\n"
			f"- totalMarks must equal the sum of marksAwarded and never exceed {question.marks}.\n\n"
			f"Return JSON with keys: exampleCode (a full-mark {language} solution), markBreakdown (array of "
			"{criterion, marksAwarded, maxMarks, feedback}), totalMarks (number), feedback (string addressed to the student)."
		)

	async def mark(self, question: CodeQuestion, answer: str, key: Optional[MarkingAnswer] = None) -> MarkRecord:
		data = await self._ask(self._prompt(question, answer, key))
		max_marks = float(question.marks)
		breakdown = _breakdown(data.get("markBreakdown"), max_marks)
		return MarkRecord(
			question_id=question.id,
			question_number=question.question_number,
			user_answer=answer,
			example_code=_text(data.get("exampleCode")),
			mark_breakdown=breakdown,
			total_marks=_total(data, breakdown, max_marks),
			max_marks=max_marks,
			feedback=_text(data.get("feedback")) or "",
		)


class MarkingOrchestrator:
	def __init__(self, oracle: CompletionOracle, *, partial_credit: Optional[str] = None, temperature: Optional[float] = None) -> None:
		self.diagram = DiagramStrategy()
		self.unanswered = UnansweredStrategy()
		written = WrittenStrategy(oracle, temperature=temperature)
		self.strategies: Dict[str, MarkingStrategy] = {
			"mcq": McqStrategy(oracle, temperature=temperature),
			"matching": MatchingStrategy(oracle, temperature=temperature, partial_credit=partial_credit),
			"short-answer": written,
			"extended": written,
			"code": CodeStrategy(oracle, temperature=temperature),
		}

	def strategy_for(self, question: Any, answer: str) -> MarkingStrategy:
		if is_diagram(question):
			return self.diagram
		if not answer or not answer.strip():
			return self.unanswered
		if question.type == "matching" and is_blank_match(answer):
			return self.unanswered
		return self.strategies[question.type]

	async def mark(
		self,
		questions: Sequence[Any],
		answers: Mapping[str, str],
		*,
		exam_title: str,
		exam_record_id: Optional[str] = None,
		marking_guide: Optional[MarkingGuide] = None,
		exam_id: Optional[str] = None,
	) -> MarkedAttempt:
		"""Mark every question sequentially; any failure aborts the whole attempt."""
		keys = {a.question_id: a for a in marking_guide.question_answers} if marking_guide else {}
		marks: List[MarkRecord] = []
		for question in questions:
			answer = answers.get(question.id) or ""
			record = await self.strategy_for(question, answer).mark(question, answer, keys.get(question.id))
			if question.type in WRITTEN_TYPES:
				record = apply_override(record, answer)
			marks.append(record)
		total_score = round(sum(m.total_marks for m in marks), 2)
		total_possible = round(sum(m.max_marks for m in marks), 2)
		logger.info("[nesa.mark] %s: %s/%s across %d questions", exam_title, total_score, total_possible, len(marks))
		return MarkedAttempt(
			exam_id=exam_id or uuid.uuid4().hex,
			exam_record_id=exam_record_id,
			exam_title=exam_title,
			questions=list(questions),
			marks=marks,
			total_score=total_score,
			total_possible=total_possible,
			percentage=calculate_percentage(total_score, total_possible),
			completed_at=int(time.time() * 1000),
		)
