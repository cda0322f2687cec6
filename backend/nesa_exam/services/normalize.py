"""Repairs for the shapes the oracle commonly gets wrong, applied before validation."""
from __future__ import annotations
from typing import Any, Dict, List

CODE_LANGUAGES = ("python", "sql", "diagram")


def collapse_text(value: Any) -> Any:
	"""Collapse a list answer into a single string; other values pass through."""
	if not isinstance(value, list):
		return value
	if len(value) == 1:
		return str(value[0])
	return "\n".join(str(v) for v in value)


def normalize_question(raw: Any) -> Any:
	if not isinstance(raw, dict):
		return raw
	question: Dict[str, Any] = dict(raw)
	language = question.get("codeLanguage")
	if isinstance(language, list):
		language = language[0] if language else None
	if isinstance(language, str):
		language = language.strip().lower()
	if question.get("type") == "code":
		if language in CODE_LANGUAGES:
			question["codeLanguage"] = language
		else:
			question.pop("codeLanguage", None)
			question["type"] = "short-answer"
	else:
		question.pop("codeLanguage", None)
	if "sampleAnswer" in question:
		question["sampleAnswer"] = collapse_text(question["sampleAnswer"])
	return question


def normalize_exam(raw: Any) -> Any:
	"""Normalize a generated exam payload in place of the oracle's raw dict.

	Questions are renumbered 1..N in the order received and ``totalMarks`` is
	recomputed from the question marks. Anything structurally off is left for
	schema validation to report.
	"""
	if not isinstance(raw, dict):
		return raw
	exam: Dict[str, Any] = dict(raw)
	questions = exam.get("questions")
	if isinstance(questions, list):
		normalized: List[Any] = []
		for index, question in enumerate(questions, start=1):
			question = normalize_question(question)
			if isinstance(question, dict):
				question["questionNumber"] = index
			normalized.append(question)
		exam["questions"] = normalized
		marks = [q.get("marks") for q in normalized if isinstance(q, dict)]
		if all(isinstance(m, (int, float)) and not isinstance(m, bool) for m in marks):
			exam["totalMarks"] = int(sum(marks))
	guide = exam.get("markingGuide")
	if isinstance(guide, dict) and isinstance(guide.get("questionAnswers"), list):
		answers = []
		for entry in guide["questionAnswers"]:
			if isinstance(entry, dict) and "answer" in entry:
				entry = {**entry, "answer": collapse_text(entry["answer"])}
			answers.append(entry)
		exam["markingGuide"] = {**guide, "questionAnswers": answers}
	elif guide is None:
		exam.pop("markingGuide", None)
	return exam
