"""Errors raised by automation storage and orchestration."""


class WorkspaceNotFoundError(ValueError):
    """Raised when a workspace id or name does not resolve."""

    pass


class AutomationNotFoundError(ValueError):
    """Raised when an automation does not exist in the workspace."""

    pass


class RunNotFoundError(ValueError):
    """Raised when a run record does not exist in the workspace."""

    pass


class InvalidRunTransitionError(ValueError):
    """Raised when updating a run that already reached a terminal status."""

    pass


class AdmissionRejectedError(RuntimeError):
    """Raised when the concurrent run limit is reached. No run record is created."""

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Concurrency limit reached ({limit} max). Wait for a running automation to complete."
        )
        self.limit = limit


class AutomationConfigUnreadableError(RuntimeError):
    """Raised when a workspace's automation file cannot be parsed, so it must not be rewritten."""

    pass


class InvalidWebhookSecretError(PermissionError):
    """Raised when a webhook request carries a missing or wrong secret."""

    pass
