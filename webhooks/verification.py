import hashlib
import hmac
import logging
from typing import Mapping

from core.config import settings
from core.errors import WebhookAuthenticationError, WebhookNotConfigured
from payments.base import load_json
from payments.events import ProcessorEvent
from payments.manager import PaymentServiceManager

logger = logging.getLogger(__name__)

RELAY_SIGNATURE_HEADER = "x-hookdeck-signature"


def verify_relay_signature(raw_body: bytes, signature: str | None, secret: str | None) -> dict:
    """Hookdeck style: hex HMAC-SHA256 of the raw body with the relay's shared secret."""
    if not secret:
        raise WebhookNotConfigured("RELAY_SIGNATURE_KEY")
    if not signature:
        raise WebhookAuthenticationError(f"Missing {RELAY_SIGNATURE_HEADER} header")

    computed_signature = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(computed_signature, signature):
        raise WebhookAuthenticationError("Invalid relay signature")

    return load_json(raw_body)


def verify_and_parse(
    processor_name: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    manager: PaymentServiceManager,
    trust_mode: str | None = None,
) -> ProcessorEvent:
    """Authenticate an inbound webhook and normalize it into a ProcessorEvent.

    The trust model comes from configuration only. Headers belonging to the
    other model are never consulted.
    """
    processor = manager.get(processor_name)
    mode = trust_mode or settings.WEBHOOK_TRUST_MODE

    try:
        if mode == "relay":
            payload = verify_relay_signature(
                raw_body, headers.get(RELAY_SIGNATURE_HEADER), settings.RELAY_SIGNATURE_KEY
            )
        elif mode == "direct":
            payload = processor.verify_webhook(raw_body, headers)
        else:
            raise WebhookNotConfigured("WEBHOOK_TRUST_MODE")
    except WebhookAuthenticationError as e:
        logger.warning("Rejected %s webhook (%s mode): %s", processor_name, mode, e.message)
        raise

    event = processor.parse_event(payload)
    logger.info("Verified %s webhook: %s", processor_name, event.type)
    return event
