"""
Billing exceptions.

Every failure a caller can see derives from BillingError and renders to the
same structured shape: a status flag plus a list of user-facing messages.
"""
from typing import Any, Dict, List, Optional


class BillingError(Exception):
    """Base exception for subscription lifecycle errors."""

    code = 'billing_error'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def messages(self) -> List[str]:
        """User-facing messages for this error."""
        return [self.message]

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            'status': False,
            'code': self.code,
            'messages': self.messages,
            'details': self.details,
        }


class PaymentMethodMissing(BillingError):
    """No usable payment instrument on file and none supplied."""

    code = 'payment_method_missing'

    def __init__(self, message: str = 'There was an issue processing your payment. '
                                      'Please enter your details again.'):
        super().__init__(message)


class PlanNotFound(BillingError):
    """Catalog lookup miss."""

    code = 'plan_not_found'

    def __init__(self, lookup: Any):
        self.lookup = lookup
        super().__init__(f'Unknown plan: {lookup}', {'lookup': str(lookup)})


class NoActiveSubscription(BillingError):
    """The intent needs a live subscription and the subject has none."""

    code = 'no_active_subscription'

    def __init__(self, message: str = 'There is no active subscription on this account.'):
        super().__init__(message)


class NoScheduledChange(BillingError):
    """cancel_schedule called without a pending schedule."""

    code = 'no_scheduled_change'

    def __init__(self, message: str = 'There is no pending schedule change for this subscription.'):
        super().__init__(message)


class GatewayError(BillingError):
    """
    Failure reported by (or while talking to) the payment gateway.

    Attributes:
        code: Provider-neutral error kind (see the class constants)
        step: Gateway operation that failed, e.g. 'update_schedule'
        provider_code: Raw provider code, for operators only
    """

    INSUFFICIENT_FUNDS = 'insufficient_funds'
    CARD_DECLINED = 'card_declined'
    INVALID_REQUEST = 'invalid_request'
    AUTHENTICATION = 'authentication'
    RATE_LIMITED = 'rate_limited'
    CONNECTION = 'connection_error'
    TIMEOUT = 'timeout'
    GENERIC = 'generic'

    def __init__(
        self,
        message: str,
        code: str = GENERIC,
        step: Optional[str] = None,
        provider_code: Optional[str] = None,
    ):
        self.code = code
        self.step = step
        self.provider_code = provider_code
        super().__init__(message, {'step': step, 'provider_code': provider_code})

    def at_step(self, step: str) -> 'GatewayError':
        """Record which step of a multi-step operation failed."""
        self.step = step
        self.details['step'] = step
        return self


class GatewayTimeout(GatewayError):
    """The gateway did not answer within the configured timeout."""

    def __init__(self, message: str, step: Optional[str] = None, provider_code: Optional[str] = None):
        super().__init__(message, GatewayError.TIMEOUT, step, provider_code)


class InvoicePaymentFailed(BillingError):
    """Immediate invoice could not be paid. Surface to the user; never retried automatically."""

    code = 'invoice_payment_failed'

    def __init__(self, gateway_error: GatewayError, invoice_ref: Optional[str] = None):
        self.gateway_error = gateway_error
        self.invoice_ref = invoice_ref
        super().__init__(
            'Your plan was updated but the payment for it failed. '
            'Please check your payment details.',
            {'invoice_ref': invoice_ref, 'gateway_code': gateway_error.code},
        )

    @property
    def messages(self) -> List[str]:
        return [self.message, self.gateway_error.message]


class ScheduleConflict(BillingError):
    """A schedule already exists and could not be released."""

    code = 'schedule_conflict'

    def __init__(self, message: str = 'A plan change is already pending for this subscription.',
                 gateway_error: Optional[GatewayError] = None):
        self.gateway_error = gateway_error
        details = {'gateway_code': gateway_error.code} if gateway_error else {}
        super().__init__(message, details)


class SwapFailed(BillingError):
    """New subscription could not be created after the old one was cancelled."""

    code = 'swap_failed'

    def __init__(self, gateway_error: GatewayError):
        self.gateway_error = gateway_error
        super().__init__(
            'There was an error swapping this subscription. Your previous plan has been '
            'cancelled. We have been alerted. Please try again later.',
            {'gateway_code': gateway_error.code, 'step': gateway_error.step},
        )


class ResumeFailed(BillingError):
    """Gateway refused to resume a subscription in its grace period."""

    code = 'resume_failed'

    def __init__(self, gateway_error: GatewayError):
        self.gateway_error = gateway_error
        super().__init__(
            'There was an issue trying to resume your plan. We have been notified. '
            'Please try again later.',
            {'gateway_code': gateway_error.code},
        )
