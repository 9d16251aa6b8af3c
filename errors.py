"""Error taxonomy shared by services, the store layer and the HTTP API."""


class BudgetValidationError(ValueError):
    """User input was rejected before any state was touched."""


class NotFoundError(ValueError):
    """The requested envelope or transaction does not exist."""


class FeatureLimitError(ValueError):
    """A free-tier limit was reached or a premium-only feature was requested."""


class PersistenceError(RuntimeError):
    """Saving to or reading from the database failed."""


class StoreError(RuntimeError):
    """The store could not be reached or refused the request."""


class EntitlementVerificationError(StoreError):
    """A store transaction carried a signature that did not verify."""
