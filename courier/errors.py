from __future__ import annotations


class CourierError(Exception):
    """Base error for courier."""


class ConfigError(CourierError):
    """Config validation error."""


class RunNotFoundError(CourierError):
    """A run id is unknown to the job store."""


class DuplicateRunError(CourierError):
    """A process is already registered for the run id."""
