"""Exception types for Demand Radar."""


class DemandRadarError(Exception):
    """Base exception for Demand Radar errors."""
    pass


class ValidationError(DemandRadarError):
    """Raised when a parameter or record fails validation."""
    pass


class NotFoundError(DemandRadarError):
    """Raised when a referenced post or opportunity no longer exists."""
    pass


class PersistenceError(DemandRadarError):
    """Raised when the storage layer fails to read or write."""
    pass


class PartialFailure(DemandRadarError):
    """Raised when some groups of a batch failed while others succeeded.

    Attributes:
        failures: The per-group failures that were recorded.
    """

    def __init__(self, message: str, failures: list | None = None):
        super().__init__(message)
        self.failures = failures or []
