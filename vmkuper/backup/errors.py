"""
Error taxonomy for backup runs.

- RunFatalError: aborts the whole run before any machine is processed
- MachineFatalError: aborts one machine's workflow, the run continues
- BestEffortError: cleanup failure, logged and suppressed
"""


class BackupError(Exception):
    """Base class for all backup errors."""
    pass


class RunFatalError(BackupError):
    """Raised when a shared prerequisite of the run is not satisfiable."""
    pass


class MachineFatalError(BackupError):
    """Raised when a workflow step fails for a single machine."""

    def __init__(self, machine: str, step: str, message: str):
        self.machine = machine
        self.step = step
        super().__init__(f"{machine}: {step} failed: {message}")


class BestEffortError(BackupError):
    """Raised by cleanup steps. Never escapes the workflow."""
    pass
