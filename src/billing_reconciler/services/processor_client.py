"""
Processor control API - outbound calls that mutate processor-side state

These are remote calls that can fail independently of local persistence;
callers must never assume they are atomic with a database commit.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
import logging

import stripe

from ..exceptions import ProcessorError

logger = logging.getLogger(__name__)


class ProcessorClient(ABC):
    """Abstract base class for processor control operations"""

    @abstractmethod
    def pause_collection(self, subscription_id: str) -> Dict[str, Any]:
        """Stop collecting payments for a subscription"""
        pass

    @abstractmethod
    def resume_collection(self, subscription_id: str) -> Dict[str, Any]:
        """Resume payment collection for a paused subscription"""
        pass

    @abstractmethod
    def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Refund part or all of a payment (amount in minor units)"""
        pass

    @abstractmethod
    def set_default_payment_method(self, subscription_id: str, payment_method_id: str) -> Dict[str, Any]:
        """Charge future invoices of a subscription to a payment method"""
        pass


class StripeProcessorClient(ProcessorClient):
    """Stripe control API client"""

    def __init__(self, api_key: str):
        self.stripe = stripe
        self.api_key = api_key

    def pause_collection(self, subscription_id: str) -> Dict[str, Any]:
        """Pause collection, voiding invoices raised while paused"""
        try:
            subscription = self.stripe.Subscription.modify(
                subscription_id,
                pause_collection={"behavior": "void"},
                api_key=self.api_key,
            )
            logger.info(f"Paused collection for subscription {subscription_id}")
            return {
                "subscription_id": subscription.id,
                "status": subscription.status,
                "paused": True,
            }
        except stripe.StripeError as e:
            logger.error(f"Stripe pause collection failed for {subscription_id}: {e}")
            raise ProcessorError(str(e)) from e

    def resume_collection(self, subscription_id: str) -> Dict[str, Any]:
        """Clear pause_collection on a subscription"""
        try:
            subscription = self.stripe.Subscription.modify(
                subscription_id,
                pause_collection="",
                api_key=self.api_key,
            )
            logger.info(f"Resumed collection for subscription {subscription_id}")
            return {
                "subscription_id": subscription.id,
                "status": subscription.status,
                "paused": False,
            }
        except stripe.StripeError as e:
            logger.error(f"Stripe resume collection failed for {subscription_id}: {e}")
            raise ProcessorError(str(e)) from e

    def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Create a Stripe refund"""
        params = {
            "payment_intent": payment_intent_id,
            "amount": amount,
            "metadata": metadata or {},
        }
        if reason:
            params["reason"] = reason

        try:
            refund = self.stripe.Refund.create(api_key=self.api_key, **params)
            logger.info(f"Created refund {refund.id} for {payment_intent_id}: {amount}")
            return {
                "refund_id": refund.id,
                "status": refund.status,
                "amount": refund.amount,
                "currency": refund.currency,
            }
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {payment_intent_id}: {e}")
            raise ProcessorError(str(e)) from e

    def set_default_payment_method(self, subscription_id: str, payment_method_id: str) -> Dict[str, Any]:
        """Set default_payment_method; the processor may activate an incomplete subscription"""
        try:
            subscription = self.stripe.Subscription.modify(
                subscription_id,
                default_payment_method=payment_method_id,
                api_key=self.api_key,
            )
            logger.info(f"Set default payment method {payment_method_id} on subscription {subscription_id}")
            return {
                "subscription_id": subscription.id,
                "status": subscription.status,
            }
        except stripe.StripeError as e:
            logger.error(f"Stripe default payment method update failed for {subscription_id}: {e}")
            raise ProcessorError(str(e)) from e


class ManualProcessorClient(ProcessorClient):
    """
    Processor client for environments without API credentials

    Records the requested action in the log for an operator to perform.
    """

    def pause_collection(self, subscription_id: str) -> Dict[str, Any]:
        logger.warning(f"Manual action required: pause collection for subscription {subscription_id}")
        return {"subscription_id": subscription_id, "status": "manual", "paused": False}

    def resume_collection(self, subscription_id: str) -> Dict[str, Any]:
        logger.warning(f"Manual action required: resume collection for subscription {subscription_id}")
        return {"subscription_id": subscription_id, "status": "manual", "paused": False}

    def create_refund(
        self,
        payment_intent_id: str,
        amount: int,
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        raise ProcessorError("Refunds require processor API credentials")

    def set_default_payment_method(self, subscription_id: str, payment_method_id: str) -> Dict[str, Any]:
        logger.warning(
            f"Manual action required: set payment method {payment_method_id} on subscription {subscription_id}"
        )
        raise ProcessorError("Updating subscriptions requires processor API credentials")


def get_processor_client(config) -> ProcessorClient:
    """
    Factory function for the processor control client

    Args:
        config: Config object with processor settings

    Returns:
        ProcessorClient instance
    """
    if config.STRIPE_SECRET_KEY:
        return StripeProcessorClient(config.STRIPE_SECRET_KEY)

    if config.ENV in ["staging", "prod"]:
        raise ValueError("STRIPE_SECRET_KEY not configured")

    logger.warning("STRIPE_SECRET_KEY not set - processor actions will be logged for manual handling")
    return ManualProcessorClient()
