"""Error taxonomy and diagnostics for the TeX → HTML parser."""
from __future__ import annotations

from dataclasses import dataclass

CONTEXT_LIMIT = 100


class TexError(Exception):
    """Base class for parser errors."""


class UnbalancedBraceError(TexError):
    """An opening brace inside a command body has no matching close."""

    def __init__(self, message: str, position: int = -1, context: str = "") -> None:
        super().__init__(message)
        self.position = position
        self.context = context


class StageError(TexError):
    """A block-environment stage failed on one construct."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class FatalParseError(TexError):
    """Raised out of TexParser.parse when orchestration itself fails."""


class MathRestorationMismatch(TexError):
    """A placeholder was lost or duplicated between protect and restore."""


class WorkerError(TexError):
    """Caller-side error built from a worker error response."""

    def __init__(self, message: str, request_id: str = "") -> None:
        super().__init__(message)
        self.request_id = request_id


class WorkerTimeout(WorkerError):
    """The caller gave up waiting for a worker response."""


class NoWorkerAvailable(WorkerError):
    """Every worker in the pool has been retired or stopped."""


def trim_context(text: str, limit: int = CONTEXT_LIMIT) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


@dataclass(frozen=True)
class ParseError:
    """One recovered failure recorded during a parse call."""

    stage: str
    message: str
    context: str = ""

    @classmethod
    def from_exception(cls, stage: str, exc: BaseException, context: str = "") -> "ParseError":
        if not context and isinstance(exc, UnbalancedBraceError):
            context = exc.context
        return cls(stage=stage, message=str(exc) or exc.__class__.__name__, context=trim_context(context))

    def to_dict(self) -> dict[str, str]:
        return {"stage": self.stage, "message": self.message, "context": self.context}
