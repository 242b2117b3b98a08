class SubscriptionServiceError(Exception):
    """
    Base class for errors raised by the subscription service.

    ``status_code`` is the HTTP status the routers answer with.
    """
    status_code = 500

    def __init__(self, message: str, status_code: int = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(SubscriptionServiceError):
    status_code = 400


class DuplicateError(SubscriptionServiceError):
    status_code = 400


class NotFoundError(SubscriptionServiceError):
    status_code = 404


class PolicyViolation(SubscriptionServiceError):
    status_code = 403


class AuthenticationError(SubscriptionServiceError):
    status_code = 401


class WebhookSignatureError(SubscriptionServiceError):
    status_code = 400


class ProviderError(SubscriptionServiceError):
    """The payment provider call itself failed."""
    status_code = 500
