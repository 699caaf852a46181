# Shared router dependencies

from config.app_config import REQUEST_DEADLINE_SECONDS
from core.deadline import Deadline
from core.payment_processor import PaymentProcessor, get_payment_processor
from services.event_bus import EventBus, get_event_bus


def get_deadline() -> Deadline:
    """Per-request deadline propagated to the database commit and gateway calls."""
    return Deadline(REQUEST_DEADLINE_SECONDS)


def get_bus() -> EventBus:
    return get_event_bus()


def get_processor() -> PaymentProcessor:
    return get_payment_processor()
