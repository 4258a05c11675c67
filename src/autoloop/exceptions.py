"""Exception hierarchy for autoloop.

Everything raised by the package derives from AutoloopError so callers can
catch broadly or narrowly.
"""


class AutoloopError(Exception):
    """Base exception for all autoloop errors."""


class ConfigError(AutoloopError):
    """Invalid configuration (unknown reviewer provider, bad values)."""


class SessionError(AutoloopError):
    """A session-directed call could not be honoured."""


class JobNotFoundError(AutoloopError):
    """No job record exists for the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class PhaseTimeoutError(AutoloopError):
    """A bounded phase (Verify, Snapshot, Review) exceeded its time limit."""

    def __init__(self, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        super().__init__(f"{phase} timed out after {timeout:g}s")


class ReviewerError(AutoloopError):
    """Reviewer failure: missing credential, API error or unusable reply."""
