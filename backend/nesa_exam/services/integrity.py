"""Deterministic detection of non-genuine written answers.

The oracle is sometimes lenient towards keyboard mashing, so short-answer and
extended responses are re-checked here after marking. A positive verdict
zeroes the oracle's score.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import List

from ..schemas import MarkRecord


logger = logging.getLogger(__name__)

MIN_LENGTH = 10
REPEAT_RUN = 8
MIN_PATTERN_HITS = 2
MIN_TOKENS = 5
MIN_RECOGNIZABLE_RATIO = 0.3

KEYBOARD_PATTERNS = (
	"asdf", "sdfg", "dfgh", "fghj", "ghjk", "hjkl", "jkl;",
	"qwer", "wert", "rtyu", "tyui", "yuio", "uiop",
	"zxcv", "xcvb", "cvbn", "vbnm",
	"jfkdl", "fjdk", "dkfj",
)

VOWELS = frozenset("aeiou")

OVERRIDE_FEEDBACK = (
	"This response does not appear to be a genuine attempt at the question, so no marks have been awarded. "
	"Answer in your own words to receive feedback on your understanding."
)

_REPEAT_RE = re.compile(r"(.)\1{%d,}" % (REPEAT_RUN - 1), re.DOTALL)


@dataclass
class IntegrityVerdict:
	genuine: bool = True
	reasons: List[str] = field(default_factory=list)


def _is_recognizable(token: str) -> bool:
	letters = [c for c in token.lower() if c.isalpha()]
	if len(token) < 3 or not letters:
		return False
	has_vowel = any(c in VOWELS for c in letters)
	has_consonant = any(c not in VOWELS for c in letters)
	return has_vowel and has_consonant


def classify(answer: str) -> IntegrityVerdict:
	text = (answer or "").strip()
	verdict = IntegrityVerdict()
	if len(text) < MIN_LENGTH:
		return verdict
	lowered = text.lower()
	if _REPEAT_RE.search(lowered):
		verdict.reasons.append(f"a character repeats {REPEAT_RUN}+ times")
	hits = [p for p in KEYBOARD_PATTERNS if p in lowered]
	if len(hits) >= MIN_PATTERN_HITS:
		verdict.reasons.append("keyboard patterns: " + ", ".join(hits))
	tokens = lowered.split()
	if len(tokens) >= MIN_TOKENS:
		recognizable = sum(1 for t in tokens if _is_recognizable(t))
		if recognizable / len(tokens) < MIN_RECOGNIZABLE_RATIO:
			verdict.reasons.append(f"only {recognizable} of {len(tokens)} words are recognizable")
	verdict.genuine = not verdict.reasons
	return verdict


def apply_override(record: MarkRecord, answer: str) -> MarkRecord:
	"""Return ``record`` with its score zeroed when the answer is not genuine."""
	if record.total_marks <= 0:
		return record
	verdict = classify(answer)
	if verdict.genuine:
		return record
	logger.warning(
		"[nesa.integrity] override on question %s: discarded oracle score %s/%s (%s)",
		record.question_id, record.total_marks, record.max_marks, "; ".join(verdict.reasons),
	)
	breakdown = [item.model_copy(update={"marks_awarded": 0.0}) for item in record.mark_breakdown]
	return record.model_copy(update={
		"mark_breakdown": breakdown,
		"total_marks": 0.0,
		"feedback": OVERRIDE_FEEDBACK,
	})
