"""Billing domain errors, translated to HTTP responses by the routers."""


class BillingError(Exception):
    """Base class for expected billing failures."""


class SubscriptionNotFoundError(BillingError):
    pass


class CatalogItemNotFoundError(BillingError):
    pass


class InvalidBillingOperationError(BillingError):
    """The requested change is not valid for the subscription's current state."""


class TrialNotAvailableError(BillingError):
    """The tool has no trial, or the organization/user already used it."""
