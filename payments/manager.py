import logging
from decimal import Decimal

from core.config import settings
from core.errors import PaymentProcessorUnavailable, UnknownProcessor
from core.expiring_store import ExpiringStore, availability_cache
from payments.base import PaymentError, PaymentIntentResult, PaymentProcessor
from payments.paypal_service import PayPalProcessor
from payments.square_service import SquareProcessor
from payments.stripe_service import StripeProcessor

logger = logging.getLogger(__name__)


class PaymentServiceManager:
    """Routes payment intents to the first available processor."""

    def __init__(
        self,
        processors: list[PaymentProcessor],
        cache: ExpiringStore,
        availability_ttl: float = 300,
    ):
        self._processors = {p.name: p for p in processors}
        self._order = [p.name for p in processors]
        self._cache = cache
        self._ttl = availability_ttl

    def get(self, name: str) -> PaymentProcessor:
        processor = self._processors.get(name)
        if processor is None:
            raise UnknownProcessor(name)
        return processor

    def is_available(self, name: str) -> bool:
        key = f"processor-available:{name}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        available = self.get(name).is_available()
        self._cache.set(key, available, self._ttl)
        return available

    def available_processors(self) -> list[str]:
        return [name for name in self._order if self.is_available(name)]

    def create_payment_intent(
        self,
        amount_fiat: Decimal,
        currency: str,
        metadata: dict,
        preferred: str | None = None,
    ) -> PaymentIntentResult:
        order = list(self._order)
        if preferred:
            self.get(preferred)
            order.remove(preferred)
            order.insert(0, preferred)

        tried = []
        for name in order:
            if not self.is_available(name):
                continue
            tried.append(name)
            try:
                return self._processors[name].create_payment_intent(amount_fiat, currency, metadata)
            except PaymentError as e:
                logger.warning("Processor %s failed to create intent, failing over: %s", name, e)
                self._cache.delete(f"processor-available:{name}")

        raise PaymentProcessorUnavailable(tried)


_manager: PaymentServiceManager | None = None


def get_payment_manager() -> PaymentServiceManager:
    global _manager
    if _manager is None:
        _manager = PaymentServiceManager(
            processors=[
                StripeProcessor(
                    secret_key=settings.STRIPE_SECRET_KEY,
                    webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                ),
                SquareProcessor(
                    access_token=settings.SQUARE_ACCESS_TOKEN,
                    location_id=settings.SQUARE_LOCATION_ID,
                    environment=settings.SQUARE_ENVIRONMENT,
                    webhook_signature_key=settings.SQUARE_WEBHOOK_SIGNATURE_KEY,
                    notification_url=settings.SQUARE_WEBHOOK_NOTIFICATION_URL,
                    currency=settings.ONRAMP_CURRENCY,
                ),
                PayPalProcessor(
                    client_id=settings.PAYPAL_CLIENT_ID,
                    client_secret=settings.PAYPAL_CLIENT_SECRET,
                    environment=settings.PAYPAL_ENVIRONMENT,
                    webhook_id=settings.PAYPAL_WEBHOOK_ID,
                    return_url=settings.PAYPAL_RETURN_URL,
                    cancel_url=settings.PAYPAL_CANCEL_URL,
                    currency=settings.ONRAMP_CURRENCY,
                ),
            ],
            cache=availability_cache,
            availability_ttl=settings.PROCESSOR_AVAILABILITY_TTL_SECONDS,
        )
    return _manager
