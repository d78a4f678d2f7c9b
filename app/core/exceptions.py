"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_NO_ITEMS = "ERR_2002"
    ORDER_NO_ADDRESS = "ERR_2003"
    VENDOR_NOT_FOUND = "ERR_2004"
    DELIVERY_CODE_MISMATCH = "ERR_2005"
    DELIVERY_ALREADY_CLAIMED = "ERR_2006"
    DELIVERY_NOT_READY = "ERR_2007"
    ORDER_NUMBER_EXHAUSTED = "ERR_2008"
    RIDER_OFFLINE = "ERR_2009"
    MEAL_UNAVAILABLE = "ERR_2010"
    ORDER_ALREADY_PAID = "ERR_2011"

    # User errors (3xxx)
    USER_NOT_FOUND = "ERR_3001"
    INVALID_USER_ROLE = "ERR_3004"

    # Wallet / ledger errors (4xxx)
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    WALLET_LOCKED = "ERR_4004"
    INVALID_PIN = "ERR_4005"
    PIN_NOT_SET = "ERR_4006"
    BANK_DETAILS_UNVERIFIED = "ERR_4007"
    NOTHING_ELIGIBLE = "ERR_4008"
    LEDGER_INCONSISTENT = "ERR_4009"
    TRANSACTION_NOT_FOUND = "ERR_4010"
    TRANSACTION_ALREADY_PROCESSED = "ERR_4011"

    # External service errors (5xxx)
    PAYMENT_DECLINED = "ERR_5001"
    PAYMENT_PROVIDER_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    PAYMENT_OUTCOME_UNKNOWN = "ERR_5005"
    BAD_SIGNATURE = "ERR_5006"
    NOTIFICATION_ERROR = "ERR_5007"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class NotAuthorizedError(AppException):
    """Raised when the acting user may not perform an operation"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )


# ==================== Orders ====================

class OrderException(AppException):
    """Base exception for order-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        order_id: int | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if order_id:
            self.details["order_id"] = order_id


class OrderNotFoundError(OrderException):
    """Raised when order is not found"""

    def __init__(self, order_id: int | str):
        super().__init__(
            message=f"Order not found: {order_id}",
            error_code=ErrorCode.ORDER_NOT_FOUND,
            status_code=404,
            details={"identifier": str(order_id)}
        )


class NoItemsFromVendorError(OrderException):
    """Raised when the cart holds nothing from the requested vendor"""

    def __init__(self, vendor_id: int):
        super().__init__(
            message="No items from this vendor in cart",
            error_code=ErrorCode.ORDER_NO_ITEMS,
            details={"vendor_id": vendor_id}
        )


class NoDeliveryAddressError(OrderException):
    """Raised when no usable delivery address exists"""

    def __init__(self, customer_id: int, address_id: int | None = None):
        super().__init__(
            message="No delivery address found",
            error_code=ErrorCode.ORDER_NO_ADDRESS,
            details={"customer_id": customer_id, "address_id": address_id}
        )


class VendorNotFoundError(OrderException):
    """Raised when vendor is missing or inactive"""

    def __init__(self, vendor_id: int):
        super().__init__(
            message=f"Vendor not found: {vendor_id}",
            error_code=ErrorCode.VENDOR_NOT_FOUND,
            status_code=404,
            details={"vendor_id": vendor_id}
        )


class MealUnavailableError(OrderException):
    """Raised when a cart meal can no longer be ordered"""

    def __init__(self, meal_id: int):
        super().__init__(
            message=f"Meal {meal_id} is not available",
            error_code=ErrorCode.MEAL_UNAVAILABLE,
            details={"meal_id": meal_id}
        )


class DeliveryCodeMismatchError(OrderException):
    """Raised when the delivery confirmation code does not match"""

    def __init__(self, order_id: int):
        super().__init__(
            message="Delivery code does not match",
            error_code=ErrorCode.DELIVERY_CODE_MISMATCH,
            order_id=order_id
        )


class DeliveryAlreadyClaimedError(OrderException):
    """Raised when another rider won the accept race"""

    def __init__(self, order_id: int):
        super().__init__(
            message="Delivery no longer available",
            error_code=ErrorCode.DELIVERY_ALREADY_CLAIMED,
            order_id=order_id,
            status_code=409
        )


class DeliveryNotReadyError(OrderException):
    """Raised when accepting an order that is not ready for pickup"""

    def __init__(self, order_id: int, current_status: str, payment_status: str | None = None):
        reason = f"status '{current_status}'"
        if payment_status is not None:
            reason += f", payment '{payment_status}'"
        super().__init__(
            message=f"Order {order_id} is not ready for delivery ({reason})",
            error_code=ErrorCode.DELIVERY_NOT_READY,
            order_id=order_id,
            status_code=409,
            details={"current_status": current_status, "payment_status": payment_status}
        )


class RiderOfflineError(OrderException):
    """Raised when an offline rider tries to accept a delivery"""

    def __init__(self, rider_id: int):
        super().__init__(
            message="Rider must be online to accept deliveries",
            error_code=ErrorCode.RIDER_OFFLINE,
            details={"rider_id": rider_id}
        )


class OrderAlreadyPaidError(OrderException):
    """Raised when paying for an order whose payment already completed"""

    def __init__(self, order_id: int):
        super().__init__(
            message="Order already paid",
            error_code=ErrorCode.ORDER_ALREADY_PAID,
            order_id=order_id,
            status_code=409
        )


class OrderNumberExhaustedError(OrderException):
    """Raised when no unique order number could be generated"""

    def __init__(self, attempts: int):
        super().__init__(
            message=f"Could not generate a unique order number after {attempts} attempts",
            error_code=ErrorCode.ORDER_NUMBER_EXHAUSTED,
            status_code=500,
            details={"attempts": attempts}
        )


# ==================== Users ====================

class UserNotFoundError(AppException):
    """Raised when user is not found"""

    def __init__(self, user_id: int):
        super().__init__(
            message=f"User not found: {user_id}",
            error_code=ErrorCode.USER_NOT_FOUND,
            status_code=404,
            details={"user_id": user_id}
        )


class InvalidUserRoleError(AppException):
    """Raised when a user's role does not allow the operation"""

    def __init__(self, user_id: int, role: str, required: str):
        super().__init__(
            message=f"User {user_id} has role '{role}', required '{required}'",
            error_code=ErrorCode.INVALID_USER_ROLE,
            status_code=403,
            details={"user_id": user_id, "role": role, "required_role": required}
        )


# ==================== Wallets & ledger ====================

class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_id: int | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if user_id:
            self.details["user_id"] = user_id


class InsufficientBalanceError(WalletException):
    """Raised when a debit would drive the balance negative"""

    def __init__(self, user_id: int, current_balance: Any, required_amount: Any):
        super().__init__(
            message="Insufficient wallet balance",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            user_id=user_id,
            details={
                "current_balance": str(current_balance),
                "required_amount": str(required_amount),
            }
        )


class InvalidAmountError(WalletException):
    """Raised for non-positive or malformed amounts"""

    def __init__(self, amount: Any):
        super().__init__(
            message=f"Invalid amount: {amount}",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"amount": str(amount)}
        )


class WalletLockedError(WalletException):
    """Raised when operating on a deactivated wallet"""

    def __init__(self, user_id: int):
        super().__init__(
            message="Wallet is not active",
            error_code=ErrorCode.WALLET_LOCKED,
            user_id=user_id,
            status_code=403
        )


class InvalidPinError(WalletException):
    """Raised when the wallet PIN is wrong or malformed"""

    def __init__(self, message: str = "Invalid wallet PIN"):
        super().__init__(message=message, error_code=ErrorCode.INVALID_PIN)


class PinNotSetError(WalletException):
    """Raised when a PIN-protected operation runs before a PIN was set"""

    def __init__(self, user_id: int):
        super().__init__(
            message="Wallet PIN is not set",
            error_code=ErrorCode.PIN_NOT_SET,
            user_id=user_id
        )


class BankDetailsUnverifiedError(WalletException):
    """Raised when withdrawing without verified bank details"""

    def __init__(self, user_id: int):
        super().__init__(
            message="Bank details not found or not verified",
            error_code=ErrorCode.BANK_DETAILS_UNVERIFIED,
            user_id=user_id
        )


class NothingEligibleError(WalletException):
    """Raised when a settlement finds no eligible orders"""

    def __init__(self, user_id: int, actor_type: str):
        super().__init__(
            message=f"No earnings eligible for settlement ({actor_type})",
            error_code=ErrorCode.NOTHING_ELIGIBLE,
            user_id=user_id,
            status_code=409,
            details={"actor_type": actor_type}
        )


class LedgerInconsistencyError(WalletException):
    """Raised when balances disagree with the ledger and a write would corrupt them"""

    def __init__(self, user_id: int, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.LEDGER_INCONSISTENT,
            user_id=user_id,
            status_code=409,
            details=details
        )


class TransactionNotFoundError(WalletException):
    """Raised when a ledger transaction is not found"""

    def __init__(self, transaction_id: int):
        super().__init__(
            message=f"Transaction not found: {transaction_id}",
            error_code=ErrorCode.TRANSACTION_NOT_FOUND,
            status_code=404,
            details={"transaction_id": transaction_id}
        )


class TransactionAlreadyProcessedError(WalletException):
    """Raised when confirming a transaction that already left pending"""

    def __init__(self, transaction_id: int, status: str):
        super().__init__(
            message=f"Transaction {transaction_id} is already '{status}'",
            error_code=ErrorCode.TRANSACTION_ALREADY_PROCESSED,
            status_code=409,
            details={"transaction_id": transaction_id, "status": status}
        )


# ==================== External services ====================

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        status_code: int = 503,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name


class PaymentDeclinedError(ExternalServiceException):
    """Raised when the processor rejects the payment (e.g. card declined)"""

    def __init__(self, processor_message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payments",
            message=f"Payment failed: {processor_message}",
            error_code=ErrorCode.PAYMENT_DECLINED,
            status_code=400,
            details=details
        )


class PaymentProviderError(ExternalServiceException):
    """Raised on a definite, non-decline processor failure"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payments",
            message=f"Payment processor error: {message}",
            error_code=ErrorCode.PAYMENT_PROVIDER_ERROR,
            status_code=502,
            details=details
        )


class PaymentTimeoutError(ExternalServiceException):
    """Raised when a processor call's outcome is unknown (timeout / connection lost)"""

    def __init__(self, operation: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payments",
            message=f"Payment processor did not answer ({operation})",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            status_code=504,
            details=details
        )
        self.details["operation"] = operation


class PaymentOutcomeUnknownError(ExternalServiceException):
    """Raised when repeated re-queries could not settle a payment's outcome"""

    def __init__(self, idempotency_key: str, attempts: int):
        super().__init__(
            service_name="payments",
            message=(
                "Payment outcome is unknown; no new charge was attempted. "
                "Retry the request to resume."
            ),
            error_code=ErrorCode.PAYMENT_OUTCOME_UNKNOWN,
            details={"idempotency_key": idempotency_key, "attempts": attempts}
        )


class WebhookSignatureError(ExternalServiceException):
    """Raised when a webhook payload fails signature verification"""

    def __init__(self, reason: str):
        super().__init__(
            service_name="payments",
            message="Invalid webhook signature",
            error_code=ErrorCode.BAD_SIGNATURE,
            status_code=400,
            details={"reason": reason}
        )


class NotificationGatewayError(ExternalServiceException):
    """Raised when the notification gateway rejects a message"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="notifications",
            message=f"Notification gateway error: {message}",
            error_code=ErrorCode.NOTIFICATION_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "NotificationGatewayError":
        """Build the error from an httpx response without logging a huge body."""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class PayoutGatewayError(ExternalServiceException):
    """Raised when the bank payout gateway rejects or fails a transfer request"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payouts",
            message=f"Payout gateway error: {message}",
            details=details
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )


# ==================== State machine ====================

class InvalidStateTransitionError(AppException):
    """Raised when an order status transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, order_id: int | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "order_id": order_id
            }
        )
