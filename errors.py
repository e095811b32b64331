"""Exception types shared across the update engine."""

from typing import List, Optional


class HarborBuddyError(Exception):
    """Base class for HarborBuddy errors."""


class ConfigError(HarborBuddyError):
    """Configuration is missing, malformed or inconsistent."""


class CycleCancelled(HarborBuddyError):
    """Raised when a stop was requested while work was in progress."""

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class ReplaceError(HarborBuddyError):
    """A container swap failed and was rolled back.

    ``step`` names the step that failed, ``cause`` is the original engine
    error and ``rollback_errors`` lists compensations that failed too.
    ``new_untouched`` is set when the swap failed before any step acted on
    the new container, which is then still under its temporary name.
    """

    def __init__(self, step: str, cause: Exception,
                 rollback_errors: Optional[List[str]] = None,
                 new_untouched: bool = False):
        self.step = step
        self.cause = cause
        self.rollback_errors = rollback_errors or []
        self.new_untouched = new_untouched
        message = f"failed to {step}: {cause}"
        if self.rollback_errors:
            message += f" (rollback incomplete: {'; '.join(self.rollback_errors)})"
        super().__init__(message)


class ReplaceWarning(HarborBuddyError):
    """The swap succeeded but the old backup container could not be removed."""

    def __init__(self, backup_name: str, cause: Exception):
        self.backup_name = backup_name
        self.cause = cause
        super().__init__(
            f"warning: failed to remove old backup container {backup_name}: {cause}"
        )


class SelfUpdateError(HarborBuddyError):
    """The self-update hand-off or the helper's recreate failed."""
