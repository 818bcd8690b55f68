from __future__ import annotations


class GroupFitError(Exception):
    """Base class for errors raised by the fitting pipeline."""


class ConvergenceFailure(GroupFitError):
    """
    The statistics engine could not produce usable estimates for one
    group or constraint level. Recovered per group by the batch runners.
    """

    def __init__(self, label: str | None, reason: str):
        self.label = label
        self.reason = reason
        where = f" for '{label}'" if label is not None else ""
        super().__init__(f"Model did not converge{where}: {reason}")


class MissingStatistic(GroupFitError):
    """A fitted result does not expose one or more requested statistics."""

    def __init__(self, label: str | None, missing: list[str], available: list[str] | None = None):
        self.label = label
        self.missing = list(missing)
        self.available = sorted(available or [])
        where = f" in result '{label}'" if label is not None else ""
        msg = f"Statistic(s) {self.missing} not available{where}."
        if self.available:
            msg += f" Available: {self.available}"
        super().__init__(msg)


class UnknownStatistic(GroupFitError, ValueError):
    """A configured statistic name is not part of the closed registry."""

    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__(f"Unknown statistic name(s): {self.names}")


class SchemaMismatch(GroupFitError):
    """Two fit records meant for one table carry different statistic keys."""

    def __init__(self, label: str, missing: list[str], extra: list[str]):
        self.label = label
        self.missing = sorted(missing)
        self.extra = sorted(extra)
        super().__init__(
            f"Record '{label}' does not match the table schema "
            f"(missing: {self.missing}, extra: {self.extra})."
        )


class InvalidTransition(GroupFitError):
    """An invariance sequence was advanced out of order."""
