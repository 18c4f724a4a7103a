# Copyright (c) Syntropy Systems
"""Error taxonomy for tierbench runs."""
from __future__ import annotations


class TierbenchError(Exception):
    """Base class for tierbench errors."""


class ConfigError(TierbenchError):
    """Configuration or workload file is invalid."""


class StartupFailure(TierbenchError):
    """Workload could not be started or never became ready.

    Retried once by the orchestrator.
    """


class RuntimeCrash(TierbenchError):
    """Workload exited while it was being measured."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class LoadGeneratorFailure(TierbenchError):
    """The load generator itself failed. Handled like a RuntimeCrash."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TimeoutExceeded(TierbenchError):
    """A run exhausted its wall-clock budget."""


class InvalidTransition(TierbenchError):
    """The run state machine was asked to make an illegal transition."""
