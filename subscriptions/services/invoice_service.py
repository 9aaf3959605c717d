# subscriptions/services/invoice_service.py
"""
Invoicing service - Morning (Green Invoice) documents for subscription payments.

Invoicing is a side effect of a payment that has already been applied to the
subscription. Callers run it from a Celery task and never let its failures
reach the payment flow.
"""

import logging
from decimal import Decimal

import requests
from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from subscriptions.exceptions import InvoicingError

logger = logging.getLogger(__name__)


class InvoiceService:
    """
    Morning API client.

    Usage:
        customer_id = InvoiceService.create_or_find_customer('Dana Levi', 'dana@example.com')
        document = InvoiceService.create_invoice_receipt(customer_id, Decimal('18'), 'Accelerate Monthly Subscription')
    """

    DOCUMENT_INVOICE_RECEIPT = 305
    DOCUMENT_CREDIT_NOTE = 330

    PAYMENT_TYPE_CREDIT_CARD = 3
    CATALOG_NUMBER = 'SUB-001'
    CURRENCY = 'USD'

    TOKEN_CACHE_KEY = 'morning_api_token'
    TOKEN_TTL = 50 * 60  # tokens live ~1 hour, refresh early

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    @classmethod
    def create_or_find_customer(cls, name: str, email: str) -> str:
        """Return the Morning client id for ``email``, creating the client if needed."""
        found = cls._call('/clients/search', {'email': email})
        items = found.get('items') or []
        if items:
            return items[0]['id']

        created = cls._call('/clients', {
            'name': name or email,
            'emails': [email],
            'active': True,
        })
        customer_id = created.get('id')
        if not customer_id:
            raise InvoicingError("Morning did not return a client id.")

        logger.info(f"[MORNING] Created client {customer_id} for {email}")
        return customer_id

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    @classmethod
    def create_invoice_receipt(cls, customer_id: str, amount: Decimal, description: str) -> dict:
        """Issue an invoice-receipt (type 305) for a completed payment."""
        return cls._create_document(cls.DOCUMENT_INVOICE_RECEIPT, customer_id, amount, description)

    @classmethod
    def create_credit_note(cls, customer_id: str, amount: Decimal, description: str) -> dict:
        """Issue a credit note (type 330)."""
        return cls._create_document(cls.DOCUMENT_CREDIT_NOTE, customer_id, amount, description)

    @classmethod
    def _create_document(cls, document_type: int, customer_id: str, amount: Decimal,
                         description: str) -> dict:
        price = float(amount)
        document = cls._call('/documents', {
            'type': document_type,
            'client': {'id': customer_id},
            'currency': cls.CURRENCY,
            'lang': 'en',
            'income': [{
                'catalogNum': cls.CATALOG_NUMBER,
                'description': description,
                'quantity': 1,
                'price': price,
                'currency': cls.CURRENCY,
                'vatType': 0,
            }],
            'payment': [{
                'type': cls.PAYMENT_TYPE_CREDIT_CARD,
                'date': timezone.localdate().strftime('%Y-%m-%d'),
                'price': price,
                'currency': cls.CURRENCY,
            }],
        })

        logger.info(
            f"[MORNING] Document type={document_type} id={document.get('id')} "
            f"issued for client {customer_id}"
        )
        return {'document_id': document.get('id'), 'document_url': document.get('url')}

    # =========================================================================
    # MORNING API
    # =========================================================================

    @classmethod
    def _authenticate(cls) -> str:
        token = cache.get(cls.TOKEN_CACHE_KEY)
        if token:
            return token

        api_url, key_id, secret = cls._config()
        try:
            response = requests.post(
                f"{api_url}/account/token",
                json={'id': key_id, 'secret': secret},
                timeout=getattr(settings, 'MORNING_TIMEOUT', 30),
            )
            response.raise_for_status()
            token = response.json().get('token')
        except (requests.RequestException, ValueError) as e:
            raise InvoicingError(f"Morning authentication failed: {e}") from e

        if not token:
            raise InvoicingError("Morning authentication response missing token.")

        cache.set(cls.TOKEN_CACHE_KEY, token, cls.TOKEN_TTL)
        return token

    @classmethod
    def _call(cls, endpoint: str, body: dict) -> dict:
        api_url, _, _ = cls._config()
        token = cls._authenticate()
        try:
            response = requests.post(
                f"{api_url}{endpoint}",
                json=body,
                headers={'Authorization': f"Bearer {token}"},
                timeout=getattr(settings, 'MORNING_TIMEOUT', 30),
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise InvoicingError(f"Morning {endpoint} failed: {e}") from e

    @classmethod
    def _config(cls):
        api_url = getattr(settings, 'MORNING_API_URL', '').rstrip('/')
        key_id = getattr(settings, 'MORNING_API_KEY_ID', '')
        secret = getattr(settings, 'MORNING_API_SECRET', '')
        if not (api_url and key_id and secret):
            raise InvoicingError("Morning invoicing is not configured.")
        return api_url, key_id, secret
