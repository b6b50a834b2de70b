from typing import Any, Optional


class SyncException(Exception):
    """Base exception for all issue-sync errors."""
    pass

class NotFoundException(SyncException):
    """Raised when an entity lookup by id or alternate key finds nothing."""
    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")

class AlreadyExistsException(SyncException):
    """Raised when a create collides with an existing primary key."""
    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} already exists: {key}")

class ValidationException(SyncException):
    """Raised when a required field (usually the id) is missing."""
    pass

class ConfigurationException(SyncException):
    """Raised when required settings are missing or malformed."""
    pass

class RateLimitExceededException(SyncException):
    """Raised when the GitHub REST rate limit is exhausted."""
    def __init__(self, reset_at: str, message: str = "GitHub API rate limit exceeded."):
        self.reset_at = reset_at
        super().__init__(f"{message} Resets at: {reset_at}")

class OperationException(SyncException):
    """Base for failures that carry the operation and the entity it touched."""
    def __init__(self, operation: str, entity_id: Any = None, message: str = ""):
        self.operation = operation
        self.entity_id = entity_id
        target = f" ({entity_id})" if entity_id is not None else ""
        super().__init__(f"{operation}{target} failed: {message}")

class TransientIOException(OperationException):
    """Raised on network or database connectivity failures. Safe for the caller to retry."""
    pass

class GitHubApiException(OperationException):
    """Raised when GitHub rejects a request (bad credentials, forbidden, invalid input). Not retryable."""
    def __init__(self, operation: str, entity_id: Any, status: int, message: str = ""):
        self.status = status
        super().__init__(operation, entity_id, f"HTTP {status} {message}".rstrip())

class DatabaseException(OperationException):
    """Raised when a database operation fails."""
    pass

class TransactionException(DatabaseException):
    """Raised when a commit fails. The whole batch must be treated as lost."""
    pass

class IngestionException(SyncException):
    """Raised when a sync run aborts; carries the stage and page it stopped at."""
    def __init__(self, stage: str, message: str, page: Optional[int] = None):
        self.stage = stage
        self.page = page
        where = f" (page {page})" if page is not None else ""
        super().__init__(f"{stage}{where}: {message}")
