from typing import Optional


class AppError(Exception):
    """Base for every error translated to an HTTP response at the router boundary."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "Internal server error"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        self.message = message or self.message
        self.detail = detail
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    def to_body(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.status_code >= 500 and self.detail:
            body["details"] = self.detail
        if self.status_code >= 500:
            body["retryable"] = self.retryable
        return body


# --- Identity ---

class InvalidToken(AppError):
    status_code = 401
    code = "invalid_token"
    message = "Invalid token"


class TokenExpired(InvalidToken):
    code = "token_expired"
    message = "Token has expired"


class IdentityProviderUnavailable(AppError):
    status_code = 503
    code = "identity_provider_unavailable"
    message = "Identity provider is temporarily unavailable"
    retryable = True


# --- Accounts ---

class AccountLookupFailed(AppError):
    code = "account_lookup_failed"
    message = "Failed to get or create user"


class AccountCreateRaceUnresolved(AppError):
    code = "account_create_race_unresolved"
    message = "Failed to get or create user"


class UserNotFound(AppError):
    status_code = 404
    code = "user_not_found"
    message = "User not found"


# --- Billing ---

class UnverifiedEvent(AppError):
    status_code = 400
    code = "unverified_event"
    message = "Webhook signature verification failed"


class BadWebhookRequest(AppError):
    status_code = 400
    code = "bad_webhook_request"
    message = "Malformed webhook event"


class MissingCustomer(AppError):
    status_code = 400
    code = "missing_customer"
    message = "No Stripe customer ID found. Please complete a payment first."


class PriceNotFound(AppError):
    status_code = 404
    code = "price_not_found"
    message = "Price not found for the given lookup key"


class UpstreamPaymentError(AppError):
    code = "upstream_payment_error"
    message = "Payment processor request failed"


class SubscriptionStoreFailed(AppError):
    code = "subscription_store_failed"
    message = "Failed to apply subscription event"
