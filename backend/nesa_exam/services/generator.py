from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import pydantic

from ..errors import GenerationCountMismatch, ValidationError
from ..gemini_client import CompletionOracle
from ..schemas import Exam, GenerateRequest
from ..settings import settings
from .normalize import normalize_exam


logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are the official NESA NSW Software Engineering HSC exam generator. You MUST generate exams that are IDENTICAL in format, tone, style, and rigor to official NESA sample exams.

COURSE SPECIFICATIONS YOU MUST FOLLOW:
- System and Data Modelling: data flow diagrams, structure charts, data dictionaries, class diagrams, storyboards, decision trees
- Programming Paradigms: object-oriented, logic, imperative, functional
- Algorithms: pseudocode, flowcharts, sequence, selection, repetition, nested structures
- Subroutines: parameters, return values, scope
- Relational Databases: SQL (SELECT, FROM, WHERE, GROUP BY, ORDER BY, SUM, AVG, COUNT, MIN, MAX), ORM principles
- Programming for the Web: front-end frameworks, cross-site scripting, CSS, HTML
- Machine Learning: MLOps stages, regression algorithms, neural networks, training/execution cycles
- Testing Methods: functional, acceptance, live, simulated, beta, volume testing
- Character Representation: ASCII, Unicode
- Python Programming: control structures, classes, functions, file handling, libraries
- Security: SAST, DAST, authentication, authorization, encryption
- Project Management: Gantt charts, process diaries, Agile, DevOps
- System Implementation: rollout types, deployment strategies

EXAM STRUCTURE (MUST MATCH):
1. Multiple Choice Questions (8 questions, 1-2 marks each): test foundational knowledge
2. Matching/Classification Questions (2 questions, 2-3 marks each): match concepts, categorize items
3. Short Answer Questions (6 questions, 2-3 marks each): brief technical explanations
4. Applied Code/Algorithm Questions (5 questions, 3-6 marks each): Python code, SQL queries, algorithm design, diagrams
5. Extended Response (1 question, 6-8 marks): comprehensive analysis of DevOps, Automation, ML, or security topics

CRITICAL REQUIREMENTS:
- Use authentic NESA phrasing and academic tone
- Mark allocations must reflect question complexity and be whole numbers
- For code questions: set codeLanguage to exactly one of "python", "sql" or "diagram" and provide starter code or context
- For SQL questions: include sqlSampleData with tableName, columns and rows
- For diagram questions: specify which diagram type (DFD, structure chart, class diagram, decision tree) and describe the expected diagram in expectedOutput
- Never set codeLanguage on questions whose type is not "code"
- Extended response must require synthesis of multiple concepts
- Questions progress from foundational to complex"""


_QUESTION_SHAPES = """Each question object has: id, type ("mcq" | "matching" | "short-answer" | "code" | "extended"), questionNumber, marks, modules (array of module names), prompt.
- mcq: options (array of {label, value} with labels "A"-"D") and sampleAnswer (the correct label)
- matching: matchingPairs (array of {left, right}, each left paired with its correct right)
- short-answer / extended: markingCriteria (array of strings), sampleAnswer
- code: codeLanguage ("python" | "sql" | "diagram"), codeStarter, expectedOutput, markingCriteria, sqlSampleData (sql only)"""


def build_user_prompt(req: GenerateRequest) -> str:
	modules_text = ", ".join(req.modules)
	if req.seed:
		seed_instruction = (
			f'Use seed "{req.seed}" to ensure deterministic generation. Vary the specific details, datasets, and wording '
			"while maintaining the same structure and difficulty."
		)
	else:
		seed_instruction = "Generate unique questions while maintaining NESA standards."
	guide_instruction = (
		'Include "markingGuide": {"questionAnswers": [{questionId, answer (a single string), criteria, sampleResponse}]} covering every question.'
		if req.include_marking_guide
		else "Do not include a marking guide."
	)
	return (
		f"Generate a complete NSW HSC Software Engineering practice exam covering: {modules_text}\n\n"
		f"Total questions: {req.question_count}\n"
		f"{seed_instruction}\n\n"
		"REQUIRED QUESTION DISTRIBUTION:\n"
		"- ~8 Multiple Choice (1-2 marks each)\n"
		"- 2 Matching/Classification (2-3 marks each)\n"
		"- 6 Short Answer (2-3 marks each)\n"
		"- 5 Code/Algorithm/Diagram (3-6 marks each)\n"
		"- 1 Extended Response (6-8 marks)\n"
		"Scale the distribution so the exam has exactly the requested number of questions.\n\n"
		"Return ONLY a JSON object with keys: examTitle, totalMarks (sum of all marks), timeAllowed (minutes), "
		"instructions (array of strings), questions (array).\n"
		f"{_QUESTION_SHAPES}\n"
		f"{guide_instruction}\n\n"
		f"IMPORTANT: the questions array MUST contain exactly {req.question_count} questions, numbered 1 to {req.question_count}."
	)


def build_correction_message(observed: int, required: int) -> str:
	return (
		f"Your previous response contained {observed} questions, but exactly {required} are required. "
		f"Regenerate the full exam with exactly {required} questions in the questions array."
	)


def parse_exam(raw: Any) -> Exam:
	"""Normalize and validate an oracle payload; diagnostics are logged and re-raised."""
	if not isinstance(raw, dict):
		raise ValidationError("Oracle returned a non-object exam payload.", upstream=True)
	try:
		return Exam.model_validate(normalize_exam(raw))
	except pydantic.ValidationError as err:
		error = ValidationError.from_pydantic(err, "Generated exam failed schema validation.", upstream=True)
		for issue in error.diagnostics:
			logger.warning("[nesa.generate.schema] %s = %r: %s", issue["path"], issue["value"], issue["message"])
		raise error from err


@dataclass
class GenerationState:
	"""Accumulator threaded through the retry loop."""
	target: int
	attempts: int = 0
	last_count: Optional[int] = None
	candidate: Optional[Exam] = None
	result: Optional[Exam] = None

	@property
	def converged(self) -> bool:
		return self.result is not None

	def observe(self, exam: Exam) -> "GenerationState":
		count = len(exam.questions)
		return GenerationState(
			target=self.target,
			attempts=self.attempts + 1,
			last_count=count,
			candidate=exam,
			result=exam if count == self.target else None,
		)


class ExamGenerator:
	def __init__(self, oracle: CompletionOracle, *, max_attempts: Optional[int] = None) -> None:
		self.oracle = oracle
		self.max_attempts = max_attempts or settings.max_generation_attempts

	def _messages(self, req: GenerateRequest, state: GenerationState) -> List[Dict[str, str]]:
		messages = [
			{"role": "system", "content": SYSTEM_PROMPT},
			{"role": "user", "content": build_user_prompt(req)},
		]
		if state.last_count is not None:
			messages.append({"role": "system", "content": build_correction_message(state.last_count, state.target)})
		return messages

	async def generate(self, req: GenerateRequest) -> Exam:
		temperature = settings.seeded_temperature if req.seed else settings.unseeded_temperature
		state = GenerationState(target=req.question_count)
		while not state.converged and state.attempts < self.max_attempts:
			raw = await self.oracle.complete(
				self._messages(req, state),
				response_format="json",
				temperature=temperature,
			)
			state = state.observe(parse_exam(raw))
			logger.info(
				"[nesa.generate] attempt %d/%d produced %d questions (target %d)",
				state.attempts, self.max_attempts, state.last_count, state.target,
			)
		if state.result is None:
			logger.warning(
				"[nesa.generate] count mismatch after %d attempts: last %s, target %d",
				state.attempts, state.last_count, state.target,
			)
			raise GenerationCountMismatch(state.target, state.last_count, state.attempts, candidate=state.candidate)
		return state.result
