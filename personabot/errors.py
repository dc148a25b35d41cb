class PersonaBotError(Exception):
    """Base class for bot errors."""


class ProviderError(PersonaBotError):
    """Payment provider call failed (after retries)."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class CooldownRejected(PersonaBotError):
    """A checkout was issued for this session too recently."""

    def __init__(self, session_id: int, retry_in_ms: int):
        super().__init__(f"checkout cooldown for {session_id}: retry in {retry_in_ms}ms")
        self.session_id = session_id
        self.retry_in_ms = retry_in_ms


class LLMError(PersonaBotError):
    """Completion endpoint answered with something we cannot read."""
