# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class FlowError(Exception):
    """
    Structured flowci error with enough context for:
      - clean CLI output
      - tracker events / UI rendering
      - debugging without full tracebacks
    """

    kind = "FlowError"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DefinitionError(FlowError):
    """Malformed, cyclic or dangling workflow definition. Fatal before scheduling."""

    kind = "DefinitionError"

    def __init__(self, message: str, *, problems: Optional[List[str]] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.problems: List[str] = list(problems or [])

    def __str__(self) -> str:
        base = super().__str__()
        if not self.problems:
            return base
        return base + "\n" + "\n".join(f"  - {p}" for p in self.problems)


class ExpressionError(FlowError):
    """Raised when an expression cannot be parsed or evaluated."""

    kind = "ExpressionError"

    def __init__(self, expression: str, reason: str, **kwargs: Any):
        super().__init__(f"invalid expression {expression!r}: {reason}", **kwargs)
        self.expression = expression
        self.reason = reason


class ArtifactNotFoundError(FlowError):
    kind = "ArtifactNotFoundError"

    def __init__(self, name: str, run_id: str, **kwargs: Any):
        super().__init__(f"artifact {name!r} not found in run {run_id}", **kwargs)
        self.name = name
        self.run_id = run_id


class StepExecutionError(FlowError):
    """Non-zero exit from a run/uses step."""

    kind = "StepExecutionError"

    def __init__(self, message: str, *, exit_code: int, output: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.output = output


class WorkerFault(FlowError):
    """Infrastructure-level failure of the worker running a job instance. Never retried."""

    kind = "WorkerFault"
