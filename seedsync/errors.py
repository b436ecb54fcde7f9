from __future__ import annotations


class ConfigurationError(ValueError):
    """Seed configuration is unusable; raised before anything is written."""


class PersistenceError(RuntimeError):
    """The store rejected a seed row. The surrounding batch is rolled back."""

    def __init__(self, message: str, *, entity: str, values: dict | None = None) -> None:
        super().__init__(message)
        self.entity = entity
        self.values = dict(values or {})


class SequenceRepairWarning(UserWarning):
    """Seed rows were committed but the primary-key sequence could not be realigned."""
