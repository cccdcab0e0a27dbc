# insights_engine/errors.py
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class InsightsError(Exception):
    """Base class for engine errors."""


class ConfigurationError(InsightsError):
    """A capability is disabled or not configured; the job exits cleanly with `skipped`."""


class FeatureDisabledError(ConfigurationError):
    def __init__(self, feature: str):
        super().__init__(f"feature '{feature}' is disabled")
        self.feature = feature


class BranchNotFoundError(ConfigurationError):
    def __init__(self, branch_id: str):
        super().__init__(f"branch '{branch_id}' not found")
        self.branch_id = branch_id


class TransportConfigError(ConfigurationError):
    """Notification channel is missing credentials or endpoint."""


class DeliveryError(InsightsError):
    """A single notification send failed."""


def is_infrastructure_error(exc: BaseException) -> bool:
    """
    Database connectivity failures abort the whole run so the scheduler can retry.
    """
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)
