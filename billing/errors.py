"""Domain errors raised by billing services and translated to HTTP by the app."""


class BillingError(Exception):
    """Base class for expected, user-facing billing failures."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(BillingError):
    status_code = 404
    code = "not_found"


class PlanNotFound(NotFound):
    code = "plan_not_found"


class Forbidden(BillingError):
    status_code = 403
    code = "forbidden"


class InvalidState(BillingError):
    status_code = 400
    code = "invalid_state"


class AlreadyProcessed(InvalidState):
    code = "already_processed"


class CheckoutConflict(InvalidState):
    status_code = 409
    code = "checkout_conflict"


class CouponNotApplicable(InvalidState):
    """Raised by strict coupon validation; `reason` names the failed rule."""

    code = "coupon_not_applicable"

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


class UpstreamPaymentError(BillingError):
    status_code = 502
    code = "upstream_payment_error"


class ValidationError(BillingError):
    status_code = 422
    code = "validation_error"
