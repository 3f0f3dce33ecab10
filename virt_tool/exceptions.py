"""
Exception hierarchy for virt-tool

Precondition failures stop the run before anything is touched; step
failures abort a workflow and leave earlier artifacts on disk.
"""
from typing import Any, Dict, Optional, Sequence

from .logging_config import redact


class VirtToolError(Exception):
    """Base exception for all virt-tool errors"""

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def __str__(self):
        return self.message


class PreconditionError(VirtToolError):
    """Environment or user input is not fit to start a workflow"""
    pass


class StepError(VirtToolError):
    """A workflow step failed; artifacts of prior steps are kept"""

    def __init__(self, step: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="STEP_FAILED", details={'step': step, **(details or {})})
        self.step = step


class CommandError(StepError):
    """An external command exited with a nonzero status"""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            step=next((part for part in self.command if part != "sudo"), "command"),
            message=f"Command failed with exit status {returncode}: {redact(self.command)}",
            details={'returncode': returncode},
        )
