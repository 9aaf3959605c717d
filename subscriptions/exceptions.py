# subscriptions/exceptions.py
"""
Typed subscription errors.

Each error carries the machine-readable ``code`` and the HTTP ``status_code``
used when a view translates it into a JSON response.
"""


class SubscriptionError(Exception):
    code = 'SUBSCRIPTION_ERROR'
    status_code = 400
    default_message = 'Subscription error.'

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {
            'ok': False,
            'code': self.code,
            'reason': self.message,
            'data': self.context,
        }


# ==============================================================================
# VALIDATION (400)
# ==============================================================================

class InvalidTierError(SubscriptionError):
    code = 'INVALID_TIER'
    default_message = 'Invalid tier.'


class InvalidBillingPeriodError(SubscriptionError):
    code = 'INVALID_BILLING_PERIOD'
    default_message = 'Invalid billing period.'


class UnknownResourceError(SubscriptionError):
    code = 'UNKNOWN_RESOURCE'
    default_message = 'Unknown resource.'


class UnknownFeatureError(SubscriptionError):
    code = 'UNKNOWN_FEATURE'
    default_message = 'Unknown feature.'


class NotAnUpgradeError(SubscriptionError):
    code = 'NOT_AN_UPGRADE'
    default_message = 'Target tier is not higher than the current tier.'


class NotADowngradeError(SubscriptionError):
    code = 'NOT_A_DOWNGRADE'
    default_message = 'Target tier is not lower than the current tier.'


class NoTierError(SubscriptionError):
    code = 'NO_TIER'
    default_message = 'Subscription has no active tier.'


class MissingPeriodEndError(SubscriptionError):
    code = 'NO_PERIOD_END'
    default_message = 'Subscription has no current period end.'


class NoPaymentMethodError(SubscriptionError):
    code = 'NO_PAYMENT_METHOD'
    default_message = 'No stored payment method to charge.'


# ==============================================================================
# NOT FOUND (404)
# ==============================================================================

class NoSubscriptionError(SubscriptionError):
    code = 'NO_SUBSCRIPTION'
    status_code = 404
    default_message = 'No subscription found.'


class AlreadyCancelledError(SubscriptionError):
    code = 'ALREADY_CANCELLED'
    status_code = 404
    default_message = 'Subscription is already cancelled.'


# ==============================================================================
# UPSTREAM PROVIDERS
# ==============================================================================

class PaymentGatewayError(SubscriptionError):
    code = 'GATEWAY_ERROR'
    status_code = 500
    default_message = 'Payment gateway request failed.'


class InvoicingError(SubscriptionError):
    """Raised inside the invoicing task only; never surfaced to HTTP callers."""
    code = 'INVOICING_ERROR'
    status_code = 500
    default_message = 'Invoicing request failed.'
