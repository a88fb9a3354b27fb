from typing import Optional


class MirrorException(Exception):
    """Base exception for all issue-mirror errors."""
    pass

class ConfigError(MirrorException):
    """Raised when no configuration source yields a complete (owner, repo, credential) tuple."""
    pass

class CooldownError(MirrorException):
    """Raised when a sync is requested before the cooldown window has elapsed."""
    def __init__(self, owner: str, repo: str, remaining_seconds: float):
        self.owner = owner
        self.repo = repo
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Sync for {owner}/{repo} is cooling down. Retry in {remaining_seconds:.0f}s."
        )

class SignatureError(MirrorException):
    """Raised when a webhook signature is missing or does not match the payload."""
    pass

class UpstreamError(MirrorException):
    """Raised when the GitHub API cannot be reached or answers with an error."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        prefix = f"GitHub API error ({status})" if status is not None else "GitHub API request failed"
        super().__init__(f"{prefix}: {message}")

class StoreError(MirrorException):
    """Raised when a database operation fails."""
    pass

class RepositoryNotConfigured(MirrorException):
    """Raised when a webhook references a repository with no local configuration."""
    def __init__(self, owner: str, repo: str):
        self.owner = owner
        self.repo = repo
        super().__init__(f"Repository not configured: {owner}/{repo}")

class WebhookPayloadError(MirrorException):
    """Raised when a webhook payload is malformed or misses required fields."""
    pass

class UnsupportedEventError(MirrorException):
    """Raised for webhook event types this engine does not handle."""
    def __init__(self, event_type: Optional[str]):
        self.event_type = event_type
        super().__init__(f"Unsupported event type: {event_type}")

class SyncError(MirrorException):
    """Raised when a sync attempt fails for a reason not covered by a more specific error."""
    pass
