import json
import logging
from typing import Any, Dict, Optional

import stripe

from lms_subscription_svc.config import Settings, get_settings
from lms_subscription_svc.errors import NotFoundError, ProviderError, ValidationError, WebhookSignatureError


def _to_dict(obj: Any) -> Dict[str, Any]:
    # StripeObject subclasses dict, so check for its converters first.
    if obj is None:
        return {}
    if hasattr(obj, 'to_dict_recursive'):
        return obj.to_dict_recursive()
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    return dict(obj)


class StripeIntegration:
    """
    Thin wrapper over the Stripe API calls the subscription lifecycle needs.

    No retries are performed here: a failed call surfaces as ``ProviderError``
    and the caller (or Stripe's webhook redelivery) retries.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def _configure(self) -> None:
        if not self.settings.stripe_api_key:
            raise ProviderError('Stripe is not configured. STRIPE_API_KEY is missing.')
        stripe.api_key = self.settings.stripe_api_key

    def create_checkout_session(self, email: str, account_id: str,
                                success_url: str, cancel_url: str) -> Dict[str, Any]:
        """
        Create a subscription-mode Checkout Session for the configured price.

        :param email: Email of the parent signing up.
        :param account_id: Local account id, stored in the session metadata.
        :param success_url: Redirect after payment (may contain {CHECKOUT_SESSION_ID}).
        :param cancel_url: Redirect when the parent abandons checkout.
        :return: The session as a dictionary (``id`` and ``url`` at least).
        """
        self._configure()
        if not self.settings.stripe_price_id:
            raise ProviderError('Stripe price is not configured. STRIPE_PRICE_ID is missing.')
        try:
            session = stripe.checkout.Session.create(
                mode='subscription',
                payment_method_types=['card'],
                customer_email=email,
                line_items=[{'price': self.settings.stripe_price_id, 'quantity': 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={'userId': account_id, 'role': 'parent'},
            )
        except stripe.StripeError as e:
            logging.error(f"Error creating checkout session for account {account_id}: {e}", exc_info=True)
            raise ProviderError(f"Failed to create checkout session: {e}") from e
        return _to_dict(session)

    def get_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """
        Retrieve a Checkout Session with its subscription expanded.

        :raises NotFoundError: if Stripe has no such session.
        """
        self._configure()
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=['subscription'])
        except stripe.InvalidRequestError as e:
            if e.http_status == 404 or e.code == 'resource_missing':
                raise NotFoundError(f"Checkout session {session_id} not found.") from e
            logging.error(f"Error retrieving checkout session {session_id}: {e}", exc_info=True)
            raise ProviderError(f"Failed to retrieve checkout session: {e}") from e
        except stripe.StripeError as e:
            logging.error(f"Error retrieving checkout session {session_id}: {e}", exc_info=True)
            raise ProviderError(f"Failed to retrieve checkout session: {e}") from e
        return _to_dict(session)

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        if not subscription_id:
            raise ValidationError('Subscription ID is required.')
        self._configure()
        try:
            return _to_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            logging.error(f"Error retrieving subscription {subscription_id}: {e}", exc_info=True)
            raise ProviderError(f"Failed to retrieve subscription: {e}") from e

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Schedule cancellation at the end of the current billing period.

        The subscription stays active on Stripe until then; the final
        ``customer.subscription.deleted`` event marks it canceled locally.
        """
        if not subscription_id:
            raise ValidationError('Subscription ID is required.')
        self._configure()
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            logging.error(f"Error canceling subscription {subscription_id}: {e}", exc_info=True)
            raise ProviderError(f"Failed to cancel subscription: {e}") from e
        return _to_dict(subscription)

    def construct_event(self, payload: bytes, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Verify a webhook payload against its Stripe-Signature header.

        :param payload: The raw request body, exactly as received.
        :param sig_header: The Stripe-Signature header.
        :param endpoint_secret: The webhook endpoint secret.
        :return: The event as a dictionary.
        :raises WebhookSignatureError: if verification fails.
        """
        try:
            stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}')
            raise WebhookSignatureError(f'Webhook signature verification failed: {e}') from e
        except ValueError as e:
            logging.error(f'Webhook payload could not be parsed: {e}')
            raise WebhookSignatureError(f'Invalid webhook payload: {e}') from e
        return json.loads(payload)
