"""
Input Validation Utilities

Validation for user inputs that reach the money and order paths:
- Monetary amounts (Decimal, two decimal places)
- Wallet PINs
- Bank account details and masking for logs
- Free-text notes and addresses, sanitized against injection
- Geographic coordinates
"""
import re
import html
from decimal import Decimal, InvalidOperation


class ValidationPatterns:
    """Regex patterns for validation"""

    PIN = re.compile(r"^\d{4}$")

    DELIVERY_CODE = re.compile(r"^\d{4}$")

    # מספר חשבון: ספרות בלבד, 6-20 תווים
    BANK_ACCOUNT_NUMBER = re.compile(r"^\d{6,20}$")

    BANK_NAME = re.compile(r"^[\w\s\-\.\'&]{2,100}$", re.UNICODE)

    SQL_INJECTION_PATTERNS = [
        re.compile(r"--\s*$|/\*|\*/", re.IGNORECASE),
        re.compile(r"['\"]\s*(OR|AND)\s+['\"]?\w*['\"]?\s*=", re.IGNORECASE),
        re.compile(r"\b(OR|AND)\s+(\d+\s*=\s*\d+|'[^']*'\s*=\s*'[^']*')", re.IGNORECASE),
        re.compile(r";\s*(SELECT|INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|TRUNCATE)\b", re.IGNORECASE),
        re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b", re.IGNORECASE),
    ]

    XSS_PATTERNS = [
        re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
        re.compile(r"javascript:", re.IGNORECASE),
        # on + אותיות + "=" בתחילת מילה בלבד, כדי לא לתפוס "condition = ..."
        re.compile(r"\bon\w+=", re.IGNORECASE),
        re.compile(r"<iframe", re.IGNORECASE),
    ]


class TextSanitizer:
    """Text sanitization for security"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Sanitize text input for storage.

        Trims, enforces max length, removes null bytes and collapses runs of
        spaces. HTML escaping happens at display time via sanitize_for_html().
        """
        if not text:
            return ""

        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        sanitized = re.sub(r" +", " ", sanitized)
        return sanitized

    @staticmethod
    def sanitize_for_html(text: str) -> str:
        if not text:
            return ""
        return html.escape(text)

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """
        Check text for potential injection attacks.

        Returns:
            Tuple of (is_safe, detected_pattern)
        """
        if not text:
            return True, None

        for pattern in ValidationPatterns.SQL_INJECTION_PATTERNS:
            if pattern.search(text):
                return False, "SQL injection pattern detected"

        for pattern in ValidationPatterns.XSS_PATTERNS:
            if pattern.search(text):
                return False, "XSS pattern detected"

        return True, None


class AmountValidator:
    """Monetary amount validation"""

    MAX_AMOUNT = Decimal("100000.00")

    @staticmethod
    def validate(
        amount: Decimal | int | float | str,
        min_value: Decimal = Decimal("0.01"),
        max_value: Decimal | None = None,
    ) -> tuple[bool, str | None]:
        """
        Validate a monetary amount.

        Args:
            amount: Amount to validate; floats are read through str() so 0.1
                stays 0.1
            min_value: Minimum allowed value (inclusive)
            max_value: Maximum allowed value (inclusive)

        Returns:
            Tuple of (is_valid, error_message)
        """
        max_value = max_value if max_value is not None else AmountValidator.MAX_AMOUNT
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            return False, "Amount is not a number"

        if not value.is_finite():
            return False, "Amount is not a number"

        if value < min_value:
            return False, f"Amount must be at least {min_value}"

        if value > max_value:
            return False, f"Amount cannot exceed {max_value}"

        # יותר משתי ספרות אחרי הנקודה
        if value != value.quantize(Decimal("0.01")):
            return False, "Amount cannot have more than 2 decimal places"

        return True, None


class PinValidator:
    """Wallet PIN validation"""

    @staticmethod
    def validate(pin: str) -> tuple[bool, str | None]:
        if not pin:
            return False, "PIN is required"
        if not ValidationPatterns.PIN.match(pin):
            return False, "PIN must be exactly 4 digits"
        return True, None


class BankDetailsValidator:
    """Bank account detail validation and masking"""

    @staticmethod
    def validate_account_number(account_number: str) -> tuple[bool, str | None]:
        if not account_number:
            return False, "Account number is required"
        cleaned = re.sub(r"[\s\-]", "", account_number)
        if not ValidationPatterns.BANK_ACCOUNT_NUMBER.match(cleaned):
            return False, "Account number must be 6-20 digits"
        return True, None

    @staticmethod
    def normalize_account_number(account_number: str) -> str:
        return re.sub(r"[\s\-]", "", account_number or "")

    @staticmethod
    def validate_bank_name(bank_name: str) -> tuple[bool, str | None]:
        if not bank_name or not bank_name.strip():
            return False, "Bank name is required"
        if not ValidationPatterns.BANK_NAME.match(bank_name.strip()):
            return False, "Bank name contains invalid characters"
        return True, None

    @staticmethod
    def mask(account_number: str | None) -> str:
        """
        Mask account number for logs and API responses.

        Returns:
            All but the last four digits replaced (e.g. ******1234)
        """
        if not account_number:
            return ""
        if len(account_number) <= 4:
            return "****"
        return "*" * (len(account_number) - 4) + account_number[-4:]


class CoordinateValidator:
    """Latitude/longitude range checks"""

    @staticmethod
    def validate(lng: float, lat: float) -> tuple[bool, str | None]:
        if not -180.0 <= lng <= 180.0:
            return False, "Longitude must be between -180 and 180"
        if not -90.0 <= lat <= 90.0:
            return False, "Latitude must be between -90 and 90"
        return True, None


# Pydantic field validators for reuse
def amount_validator(v: Decimal | None) -> Decimal | None:
    """Pydantic field validator for monetary amounts"""
    if v is None:
        return None
    is_valid, error = AmountValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return Decimal(str(v))


def pin_validator(v: str | None) -> str | None:
    """Pydantic field validator for wallet PINs"""
    if v is None:
        return None
    is_valid, error = PinValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return v


def delivery_code_validator(v: str) -> str:
    if not v or not ValidationPatterns.DELIVERY_CODE.match(v.strip()):
        raise ValueError("Delivery code must be exactly 4 digits")
    return v.strip()


def account_number_validator(v: str | None) -> str | None:
    if v is None:
        return None
    is_valid, error = BankDetailsValidator.validate_account_number(v)
    if not is_valid:
        raise ValueError(error)
    return BankDetailsValidator.normalize_account_number(v)


def sanitized_text_validator(v: str | None, max_length: int = 1000) -> str | None:
    """Pydantic field validator for sanitized text"""
    if v is None:
        return None
    is_safe, pattern = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError(f"Invalid input: {pattern}")
    return TextSanitizer.sanitize(v, max_length)
