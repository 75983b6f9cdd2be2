"""
Input Validation Utilities

Recipient address validation per provider, masking for logs, and the
checks applied to template variables at admission.
"""
import re
from typing import Any


class ValidationPatterns:
    """Regex patterns for validation"""

    # International phone (E.164 format)
    PHONE_E164 = re.compile(r"^\+[1-9]\d{6,14}$")

    # Telegram chat id (negative for groups/channels) or public @username
    TELEGRAM_CHAT = re.compile(r"^(?:-?\d{1,20}|@[A-Za-z][A-Za-z0-9_]{4,31})$")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def normalize(phone: str) -> str:
        """
        Strip formatting characters (spaces, dashes, dots, parentheses).

        A leading ``00`` international prefix becomes ``+``.
        """
        cleaned = re.sub(r"[\s\-\.\(\)]", "", phone or "")
        if cleaned.startswith("00"):
            cleaned = "+" + cleaned[2:]
        return cleaned

    @staticmethod
    def validate(phone: str) -> bool:
        """True when ``phone`` is E.164 after normalization"""
        if not phone:
            return False
        return bool(ValidationPatterns.PHONE_E164.match(PhoneNumberValidator.normalize(phone)))

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., +1234567****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class RecipientValidator:
    """Per-provider recipient checks applied at admission"""

    @staticmethod
    def validate(provider_type: str, recipient: str) -> tuple[bool, str | None]:
        """
        Validate and normalize a recipient for a provider.

        Returns:
            (True, normalized) on success, (False, error message) otherwise.
            Unknown provider types pass through unchanged - the worker
            decides whether the provider is supported.
        """
        recipient = (recipient or "").strip()
        if not recipient:
            return False, "recipient cannot be empty"

        if provider_type in ("whatsapp", "twilio_sms"):
            if not PhoneNumberValidator.validate(recipient):
                return False, "recipient must be an E.164 phone number (e.g. +14155550123)"
            return True, PhoneNumberValidator.normalize(recipient)

        if provider_type == "telegram":
            if not ValidationPatterns.TELEGRAM_CHAT.match(recipient):
                return False, "recipient must be a Telegram chat id or @username"
            return True, recipient

        return True, recipient


def mask_recipient(recipient: str | None) -> str:
    """Mask any recipient address for logs"""
    if not recipient:
        return "****"
    if recipient.startswith("@"):
        return recipient[:3] + "****"
    return PhoneNumberValidator.mask(recipient)


def validate_variables(variables: Any) -> dict[str, Any]:
    """
    Check a template variables map.

    The map is opaque: any key and any JSON value is accepted, and the
    renderer decides how a value is substituted.

    Raises:
        ValueError: when variables is not an object
    """
    if variables is None:
        return {}
    if not isinstance(variables, dict):
        raise ValueError("variables must be an object")
    return variables
