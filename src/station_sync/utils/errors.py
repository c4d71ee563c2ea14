from typing import Any
from pydantic import ValidationError


class ReconciliationError(Exception):
    """Base class for errors raised by the station reconciliation pipeline."""


class SourceUnavailableError(ReconciliationError):
    """A collaborator (HTTP source) failed for a single request."""

    def __init__(self, source: str, message: str, http_status: int | None = None):
        self.source = source
        self.message = message
        self.http_status = http_status
        status = f" (HTTP {http_status})" if http_status is not None else ""
        super().__init__(f"{source} unavailable{status}: {message}")


class ConfigurationMissingError(ReconciliationError):
    def __init__(self, source: str, setting: str):
        self.source = source
        self.setting = setting
        super().__init__(f"{source} is not configured: set {setting}")


class RunFailure(ReconciliationError):
    """A pipeline stage failed with an unexpected exception."""

    def __init__(self, stage: str, original: BaseException):
        self.stage = stage
        self.original = original
        super().__init__(f"Stage '{stage}' failed: {original}")


class RunCancelled(ReconciliationError):
    pass


class RunAlreadyActiveError(ReconciliationError):
    pass


class DataValidationError(ReconciliationError):
    def __init__(self, source: str, errors: list[dict[str, Any]], original: ValidationError | None = None):
        self.source = source
        self.errors = errors
        self.original = original
        msg = f"Validation failed for {len(errors)} records from source '{source}'"

        super().__init__(msg)

    def summary(self, limit: int = 5) -> str:
        """Human-readable summary of the first few validation issues."""
        lines = []
        for err in self.errors[:limit]:
            loc = ".".join(str(p) for p in err.get("loc", []))
            lines.append(f"- {loc}: {err.get('msg')} ({err.get('type')})")
        if len(self.errors) > limit:
            lines.append(f"... ({len(self.errors) - limit} more)")
        return "\n".join(lines)
