"""Exception taxonomy for the workbench core.

A classification miss is not an error: ``classify`` returns ``None`` and
``get_category`` returns ``"unknown"``. Everything else that can go wrong
surfaces as one of the exceptions below.
"""

from typing import Any


class WorkbenchError(Exception):
    """Base class for all workbench failures."""

    def to_dict(self) -> dict[str, Any]:
        return {"error": str(self), "kind": type(self).__name__}


class RemediationUnavailable(WorkbenchError):
    """A rule matched but no concrete plan could be derived from the text."""

    def __init__(self, rule: str, message: str | None = None):
        self.rule = rule
        super().__init__(message or f"Rule '{rule}' matched but no fix could be derived")


class ManualInterventionRequired(WorkbenchError):
    """Raised when an unattended apply is attempted on a manual plan."""

    def __init__(self, target_file: str, explanation: str):
        self.target_file = target_file
        self.explanation = explanation
        super().__init__(f"Manual fix required for {target_file}: {explanation}")


class PatchApplyFailure(WorkbenchError):
    """Reading or writing the target file failed while applying a patch."""

    def __init__(self, target_file: str, reason: str):
        self.target_file = target_file
        self.reason = reason
        super().__init__(f"Failed to patch {target_file}: {reason}")


class PersistenceWriteFailure(WorkbenchError):
    pass


class PersistenceReadFailure(WorkbenchError):
    pass


class ImportRejected(WorkbenchError):
    """An externally supplied snapshot failed format validation."""


class SandboxProviderError(WorkbenchError):
    """A call to the sandbox provider failed or timed out."""


class RecoveryStepFailure(WorkbenchError):
    """A recovery step failed; carries the step and what already completed."""

    def __init__(self, step: str, reason: str, completed_steps: list[str] | None = None):
        self.step = step
        self.reason = reason
        self.completed_steps = list(completed_steps or [])
        super().__init__(f"Recovery failed at step '{step}': {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "step": self.step,
            "completed_steps": self.completed_steps,
        }
