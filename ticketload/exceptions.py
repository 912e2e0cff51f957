"""
Exception hierarchy for the load generator.

Only run-level problems are raised as exceptions.  Anything that goes
wrong inside a single virtual user session is converted into metric
samples instead and never escapes the session.
"""

from __future__ import annotations


class LoadGenError(Exception):
    """Base class for all errors raised by ``ticketload``."""


class ConfigurationError(LoadGenError):
    """Raised when the run configuration or ramp profile is invalid."""


class ThresholdError(ConfigurationError):
    """Raised when a threshold expression cannot be parsed or applied."""


class MetricTypeError(LoadGenError):
    """Raised when a metric name is reused with a different metric kind."""


class SetupError(LoadGenError):
    """
    Raised when the test fixture cannot be provisioned.

    This is the only fatal error of a run: no session may start without
    a fixture, so the coordinator aborts before spawning anything.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
