"""
Event Router - maps processor event types to reconciler handlers
"""
import logging
from typing import Callable, Dict, List

from .event_verifier import VerifiedEvent

logger = logging.getLogger(__name__)

IGNORED = "ignored"

Handler = Callable[[VerifiedEvent], str]


class EventRouter:
    """Dispatch table from event type to handler"""

    def __init__(self, handlers: Dict[str, Handler] = None):
        self.handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, event_type: str, handler: Handler) -> None:
        self.handlers[event_type] = handler

    @property
    def event_types(self) -> List[str]:
        return sorted(self.handlers)

    def route(self, event: VerifiedEvent) -> str:
        """Run the handler for an event; unknown types are acknowledged as ignored"""
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(f"No handler for event type {event.type}, ignoring")
            return IGNORED

        logger.debug(f"Routing {event.type} to {getattr(handler, '__qualname__', handler)}")
        return handler(event)


def build_event_router(customers, subscriptions, invoices, refunds, disputes) -> EventRouter:
    """Register every handled event type"""
    return EventRouter({
        "customer.created": customers.handle_customer_created,
        "payment_method.attached": customers.handle_payment_method_attached,
        "setup_intent.succeeded": customers.handle_setup_intent_succeeded,
        "customer.subscription.created": subscriptions.handle_subscription_upserted,
        "customer.subscription.updated": subscriptions.handle_subscription_upserted,
        "customer.subscription.deleted": subscriptions.handle_subscription_deleted,
        "invoice.payment_succeeded": invoices.handle_invoice_payment_succeeded,
        "invoice.payment_failed": invoices.handle_invoice_payment_failed,
        "payment_intent.succeeded": invoices.handle_payment_intent_succeeded,
        "payment_intent.payment_failed": invoices.handle_payment_intent_failed,
        "charge.refunded": refunds.handle_charge_refunded,
        "charge.dispute.created": disputes.handle_dispute_created,
        "charge.dispute.updated": disputes.handle_dispute_updated,
        "charge.dispute.closed": disputes.handle_dispute_updated,
    })
