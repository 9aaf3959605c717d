from subscriptions.services.subscription_service import SubscriptionManager
from subscriptions.services.payment_service import PaymentService
from subscriptions.services.invoice_service import InvoiceService
from subscriptions.services.recommendation_service import RecommendationService
from subscriptions.services.reconciliation_service import ReconciliationService

__all__ = [
    'SubscriptionManager',
    'PaymentService',
    'InvoiceService',
    'RecommendationService',
    'ReconciliationService',
]
