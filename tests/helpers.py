# FILE: tests/helpers.py
"""Exam builders and a scripted completion oracle shared by the tests."""
import json
from typing import Any, Callable, Dict, List, Optional

MODULES = ["Secure Software Architecture", "Programming for the Web"]


def mcq(n: int, answer: str = "B") -> Dict[str, Any]:
    return {
        "id": f"q{n}",
        "type": "mcq",
        "questionNumber": n,
        "marks": 1,
        "modules": ["Secure Software Architecture"],
        "prompt": "Which practice best protects stored passwords?",
        "options": [
            {"label": "A", "value": "Encrypting them with a shared key"},
            {"label": "B", "value": "Hashing them with a salt"},
            {"label": "C", "value": "Storing them in a hidden column"},
            {"label": "D", "value": "Encoding them in Base64"},
        ],
        "sampleAnswer": answer,
    }


def matching(n: int) -> Dict[str, Any]:
    return {
        "id": f"q{n}",
        "type": "matching",
        "questionNumber": n,
        "marks": 3,
        "modules": ["Secure Software Architecture"],
        "prompt": "Match each testing method to its description.",
        "matchingPairs": [
            {"left": "SAST", "right": "Analyses source code without execution"},
            {"left": "DAST", "right": "Tests the running application"},
            {"left": "Penetration testing", "right": "Simulates real-world attacks"},
        ],
    }


def short_answer(n: int, marks: int = 3) -> Dict[str, Any]:
    return {
        "id": f"q{n}",
        "type": "short-answer",
        "questionNumber": n,
        "marks": marks,
        "modules": ["Programming for the Web"],
        "prompt": "Explain the difference between authentication and authorisation.",
        "markingCriteria": ["Defines authentication", "Defines authorisation", "Contrasts the two"],
    }


def extended(n: int) -> Dict[str, Any]:
    return {
        "id": f"q{n}",
        "type": "extended",
        "questionNumber": n,
        "marks": 8,
        "modules": ["Automation", "Secure Software Architecture"],
        "prompt": "Discuss how machine learning can be integrated into DevOps pipelines to improve security.",
    }


def code(n: int, language: str = "python", marks: int = 4) -> Dict[str, Any]:
    question = {
        "id": f"q{n}",
        "type": "code",
        "questionNumber": n,
        "marks": marks,
        "modules": ["Programming for the Web"],
        "prompt": f"Write a {language} solution for the scenario.",
        "codeLanguage": language,
        "expectedOutput": "A structure chart with Main Controller at the top" if language == "diagram" else "Returns even numbers",
    }
    if language == "python":
        question["codeStarter"] = "def filter_even(numbers):\n    pass"
    if language == "sql":
        question["sqlSampleData"] = {
            "tableName": "students",
            "columns": ["student_id", "name", "grade"],
            "rows": [[1, "Ava", 82], [2, "Ben", 70]],
        }
    return question


_CYCLE = [
    lambda n: mcq(n),
    lambda n: matching(n),
    lambda n: short_answer(n),
    lambda n: code(n, "python"),
    lambda n: code(n, "sql"),
    lambda n: code(n, "diagram", marks=5),
    lambda n: extended(n),
]


def make_questions(count: int) -> List[Dict[str, Any]]:
    return [_CYCLE[i % len(_CYCLE)](i + 1) for i in range(count)]


def make_exam(count: int, **overrides: Any) -> Dict[str, Any]:
    questions = make_questions(count)
    exam = {
        "examTitle": "NSW HSC Software Engineering Practice Examination",
        "totalMarks": sum(q["marks"] for q in questions),
        "timeAllowed": 180,
        "instructions": ["Attempt ALL questions", "Reading time: 5 minutes"],
        "questions": questions,
    }
    exam.update(overrides)
    return exam


def answer_for(question: Dict[str, Any]) -> str:
    if question["type"] == "mcq":
        return "B"
    if question["type"] == "matching":
        return json.dumps({p["left"]: p["right"] for p in question["matchingPairs"]})
    if question.get("codeLanguage") == "diagram":
        return json.dumps([{"id": "shape-1", "type": "rect", "text": "Main Controller"}])
    if question["type"] == "code":
        return "def filter_even(numbers):\n    return [n for n in numbers if n % 2 == 0]"
    return "Authentication verifies who a user is, while authorisation decides what that user may access."


def grading_oracle_response(messages: List[Dict[str, str]]) -> Dict[str, Any]:
    """Award full marks for any genuine-looking question, keyed off the marking prompt."""
    prompt = messages[-1]["content"]
    marks = int(prompt.split("(", 1)[1].split(" mark", 1)[0])
    if prompt.startswith("Multiple choice"):
        return {
            "correctAnswer": "B",
            "explanation": {"A": "Reversible", "B": "Correct", "C": "Obscurity", "D": "Reversible"},
            "totalMarks": marks,
            "feedback": "Well done.",
        }
    if prompt.startswith("Matching"):
        return {"matchResults": [], "markBreakdown": [], "totalMarks": marks, "feedback": "All pairs correct."}
    breakdown = [{"criterion": "Accuracy", "marksAwarded": marks, "maxMarks": marks, "feedback": "Complete."}]
    if "coding question" in prompt:
        return {"exampleCode": "print('ok')", "markBreakdown": breakdown, "totalMarks": marks, "feedback": "Works."}
    return {"modelAnswer": "A model answer.", "markBreakdown": breakdown, "totalMarks": marks, "feedback": "Clear."}


class FakeOracle:
    """Completion oracle stand-in: replays scripted responses or delegates to a handler."""

    def __init__(self, responses: Optional[List[Any]] = None, handler: Optional[Callable[[List[Dict[str, str]]], Any]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, *, response_format="json", temperature=0.3, max_tokens=None):
        self.calls.append({"messages": messages, "response_format": response_format, "temperature": temperature})
        if self.handler is not None:
            result = self.handler(messages)
        elif self.responses:
            result = self.responses.pop(0)
        else:
            raise AssertionError("unexpected oracle call")
        if isinstance(result, Exception):
            raise result
        return result
