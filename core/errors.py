from fastapi import status
from core.exceptions import AppException


class ErrorCode:
    AUTH_UNAUTHORIZED = "AUTH_UNAUTHORIZED"
    AUTH_FORBIDDEN = "AUTH_FORBIDDEN"

    USER_NOT_FOUND = "USER_NOT_FOUND"
    NO_WALLET = "NO_WALLET"

    INVALID_AMOUNT = "INVALID_AMOUNT"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    DUPLICATE_PAYMENT_INTENT = "DUPLICATE_PAYMENT_INTENT"

    REWARD_NOT_FOUND = "REWARD_NOT_FOUND"
    REWARD_NOT_RETRYABLE = "REWARD_NOT_RETRYABLE"
    REWARD_RETRY_LIMIT = "REWARD_RETRY_LIMIT"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    PROCESSOR_UNAVAILABLE = "PROCESSOR_UNAVAILABLE"
    UNKNOWN_PROCESSOR = "UNKNOWN_PROCESSOR"

    WEBHOOK_INVALID_SIGNATURE = "WEBHOOK_INVALID_SIGNATURE"
    WEBHOOK_NOT_CONFIGURED = "WEBHOOK_NOT_CONFIGURED"
    WEBHOOK_INVALID_PAYLOAD = "WEBHOOK_INVALID_PAYLOAD"

    RECONCILIATION_RUN_NOT_FOUND = "RECONCILIATION_RUN_NOT_FOUND"
    INVALID_WINDOW = "INVALID_WINDOW"


class ErrorMessage:
    UNAUTHORIZED = "You are not authorized to perform this action"
    ADMIN_REQUIRED = "Admin access required"

    USER_NOT_FOUND = "User not found"
    NO_WALLET = "User has no custodial wallet provisioned"

    TRANSACTION_NOT_FOUND = "Onramp transaction not found"
    DUPLICATE_PAYMENT_INTENT = "Payment intent already recorded"

    REWARD_NOT_FOUND = "SC reward not found"
    REWARD_RETRY_LIMIT = "Maximum retry attempts reached. Manual review required."
    LEDGER_UNAVAILABLE = "Ledger is unavailable, try again later"
    PROCESSOR_UNAVAILABLE = "No payment processor is currently available"
    UNKNOWN_PROCESSOR = "Unknown payment processor"

    WEBHOOK_INVALID_SIGNATURE = "Invalid webhook signature"
    WEBHOOK_NOT_CONFIGURED = "Webhook verification is not configured"
    WEBHOOK_INVALID_PAYLOAD = "Invalid webhook payload"

    RECONCILIATION_RUN_NOT_FOUND = "Reconciliation run not found"
    INVALID_WINDOW = "Window start must be before window end"


def bad_request(code: str, message: str, details: dict | None = None):
    return AppException(
        status_code=status.HTTP_400_BAD_REQUEST,
        code=code,
        message=message,
        details=details
    )


def unauthorized(message: str = ErrorMessage.UNAUTHORIZED):
    return AppException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        code=ErrorCode.AUTH_UNAUTHORIZED,
        message=message
    )


def forbidden(code: str, message: str):
    return AppException(
        status_code=status.HTTP_403_FORBIDDEN,
        code=code,
        message=message
    )


def not_found(code: str, message: str):
    return AppException(
        status_code=status.HTTP_404_NOT_FOUND,
        code=code,
        message=message
    )


def describe_exception(exc: Exception, limit: int = 500) -> str:
    text = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {text}"[:limit]


# Validation

class InvalidAmount(AppException):
    def __init__(self, amount, minimum, maximum):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCode.INVALID_AMOUNT,
            message=f"Amount must be between {minimum} and {maximum}",
            details={"amount": str(amount), "min": str(minimum), "max": str(maximum)},
        )


class NoWallet(AppException):
    def __init__(self, user_id: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCode.NO_WALLET,
            message=ErrorMessage.NO_WALLET,
            details={"user_id": user_id},
        )


class UserNotFound(AppException):
    def __init__(self, user_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.USER_NOT_FOUND,
            message=ErrorMessage.USER_NOT_FOUND,
            details={"user_id": user_id},
        )


class TransactionNotFound(AppException):
    def __init__(self, reference: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.TRANSACTION_NOT_FOUND,
            message=ErrorMessage.TRANSACTION_NOT_FOUND,
            details={"reference": reference},
        )


# Processors

class UnknownProcessor(AppException):
    def __init__(self, processor: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.UNKNOWN_PROCESSOR,
            message=ErrorMessage.UNKNOWN_PROCESSOR,
            details={"processor": processor},
        )


class PaymentProcessorUnavailable(AppException):
    def __init__(self, tried: list[str]):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=ErrorCode.PROCESSOR_UNAVAILABLE,
            message=ErrorMessage.PROCESSOR_UNAVAILABLE,
            details={"tried": tried},
        )


# Webhooks

class WebhookAuthenticationError(AppException):
    def __init__(self, reason: str = ErrorMessage.WEBHOOK_INVALID_SIGNATURE):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=ErrorCode.WEBHOOK_INVALID_SIGNATURE,
            message=reason,
        )


class WebhookNotConfigured(AppException):
    def __init__(self, missing: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=ErrorCode.WEBHOOK_NOT_CONFIGURED,
            message=ErrorMessage.WEBHOOK_NOT_CONFIGURED,
            details={"missing": missing},
        )


# Rewards

class RewardNotFound(AppException):
    def __init__(self, reward_id: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.REWARD_NOT_FOUND,
            message=ErrorMessage.REWARD_NOT_FOUND,
            details={"reward_id": reward_id},
        )


class RewardNotRetryable(AppException):
    def __init__(self, reward_id: str, reason: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=ErrorCode.REWARD_NOT_RETRYABLE,
            message=reason,
            details={"reward_id": reward_id},
        )
