"""Engine error definitions."""


class FlowEngineError(RuntimeError):
    """Base class for engine errors."""


class GraphValidationError(FlowEngineError, ValueError):
    """Raised when a graph definition is rejected at load time.

    Carries every problem found so the caller can report them together.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Invalid graph: {summary}")


class ExecutionError(FlowEngineError):
    """Raised when a node executor or one of its collaborators fails."""


class TemplateError(ExecutionError):
    """Raised when a template or expression cannot be evaluated."""


class SandboxError(ExecutionError):
    """Raised when user code is rejected or fails inside the code sandbox."""


class OutputParseError(ExecutionError):
    """Raised by a strict output parser that cannot parse its input."""


class ApprovalRejectedError(ExecutionError):
    """Raised when a reviewer rejects an approval gate."""


class NodeTimeoutError(ExecutionError):
    """Raised when a node exceeds its configured timeout."""


class RunNotFoundError(FlowEngineError, KeyError):
    """Raised when a run id is unknown to the run store."""

    def __str__(self) -> str:
        return f"Run not found: {self.args[0]}" if self.args else "Run not found"


class ConcurrentModificationError(FlowEngineError):
    """Raised when a checkpoint is written against a stale run version."""
