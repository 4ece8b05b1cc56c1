"""Error kinds raised by the plan/downgrade policy services.

Routes translate these into HTTP responses; services never raise HTTPException.
"""


class PolicyError(Exception):
    """Base class for policy outcomes that are reported back to the caller."""
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(PolicyError):
    status_code = 404


class ConflictError(PolicyError):
    status_code = 409


class PolicyValidationError(PolicyError):
    status_code = 400


class BillingUpstreamError(PolicyError):
    """The billing provider call failed or returned something unusable."""
    status_code = 502


class ForbiddenError(PolicyError):
    """The caller may not act on this resource."""
    status_code = 403
