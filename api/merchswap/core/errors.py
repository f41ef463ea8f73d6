"""Domain error taxonomy.

Services raise these; ``merchswap.main`` maps them onto HTTP responses.
"""

from uuid import UUID


class MerchswapError(Exception):
    """Base class for all domain errors."""


class ValidationError(MerchswapError):
    """Malformed input or a reference to something that does not fit the experiment."""


class NotFoundError(MerchswapError):
    pass


class InvalidTransitionError(MerchswapError):
    """The requested lifecycle change is not allowed from the current status."""


class ExternalServiceError(MerchswapError):
    """A collaborator (the catalog) failed or timed out."""


class CatalogError(ExternalServiceError):
    def __init__(self, message: str, user_errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.user_errors = user_errors or []


class DuplicateError(MerchswapError):
    """An event collided with an existing one under its dedup key."""

    def __init__(self, existing_id: UUID) -> None:
        super().__init__(f"Duplicate of event {existing_id}")
        self.existing_id = existing_id


class ConsistencyError(MerchswapError):
    """The row changed underneath a guarded update (concurrent writer won)."""
