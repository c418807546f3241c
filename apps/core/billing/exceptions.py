from django.core.exceptions import PermissionDenied, ValidationError


__all__ = [
    'BillingError',
    'ConcurrencyConflict',
    'OwnershipError',
    'ScheduleResolutionError',
    'ValidationError',
]


class BillingError(Exception):
    retryable = False


class OwnershipError(PermissionDenied):
    """The enrolment is not owned by the family named in the request."""

    retryable = False


class ScheduleResolutionError(BillingError):
    """The schedule cannot yield the occurrences needed to place coverage."""


class ConcurrencyConflict(BillingError):
    """Another transaction changed the same enrolment or idempotency key first."""

    retryable = True
