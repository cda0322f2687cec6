from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import pydantic


logger = logging.getLogger(__name__)


class NesaError(Exception):
	status_code = 500

	def __init__(self, detail: str) -> None:
		super().__init__(detail)
		self.detail = detail

	def body(self) -> Dict[str, Any]:
		return {"error": self.detail}


class ValidationError(NesaError):
	"""A payload did not match the Exam/Question/MarkedAttempt contracts.

	``upstream`` marks shapes produced by the oracle (502) as opposed to ones
	sent by the caller (400).
	"""

	def __init__(self, detail: str, diagnostics: Optional[List[Dict[str, Any]]] = None, *, upstream: bool = False) -> None:
		super().__init__(detail)
		self.diagnostics = diagnostics or []
		self.upstream = upstream
		self.status_code = 502 if upstream else 400

	@classmethod
	def from_pydantic(cls, err: pydantic.ValidationError, detail: str, *, upstream: bool = False) -> "ValidationError":
		return cls(detail, diagnostics_from(err), upstream=upstream)

	def body(self) -> Dict[str, Any]:
		return {"error": self.detail, "issues": self.diagnostics}


class GenerationCountMismatch(NesaError):
	status_code = 502

	def __init__(self, expected: int, observed: Optional[int], attempts: int, *, candidate: Any = None) -> None:
		super().__init__(
			f"Exam generation produced {observed} questions after {attempts} attempts; {expected} were requested."
		)
		self.expected = expected
		self.observed = observed
		self.attempts = attempts
		# Last schema-valid exam seen; kept for diagnostics, never served
		self.candidate = candidate

	def body(self) -> Dict[str, Any]:
		return {"error": self.detail, "expected": self.expected, "observed": self.observed}


class AuthorizationError(NesaError):
	status_code = 403


class NotFoundError(NesaError):
	status_code = 404


class UpstreamOracleError(NesaError):
	status_code = 502


def diagnostics_from(err: Any) -> List[Dict[str, Any]]:
	"""Flatten pydantic-style ``errors()`` (model or request validation) into issues."""
	issues: List[Dict[str, Any]] = []
	for item in err.errors():
		issues.append({
			"path": ".".join(str(p) for p in item.get("loc", ())),
			"value": _preview(item.get("input")),
			"message": item.get("msg", ""),
		})
	return issues


def _preview(value: Any) -> Any:
	# Keep diagnostics readable when the offending value is a whole question
	if isinstance(value, (dict, list)):
		text = repr(value)
		return text if len(text) <= 200 else text[:197] + "..."
	return value


def install_error_handlers(app: FastAPI) -> None:
	@app.exception_handler(NesaError)
	async def _nesa_error(_request: Request, exc: NesaError):
		if exc.status_code >= 500:
			logger.warning("[nesa.error] %s: %s", type(exc).__name__, exc.detail)
		return JSONResponse(status_code=exc.status_code, content=exc.body())

	@app.exception_handler(RequestValidationError)
	async def _bad_request(_request: Request, exc: RequestValidationError):
		error = ValidationError("Request failed validation.", diagnostics_from(exc))
		return JSONResponse(status_code=error.status_code, content=error.body())

	@app.exception_handler(Exception)
	async def _unhandled(_request: Request, exc: Exception):
		logger.exception("[server.error] %s", exc)
		return JSONResponse(status_code=500, content={"error": "Internal server error."})
