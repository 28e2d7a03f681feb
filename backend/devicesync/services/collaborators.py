"""
Interfaces the engine consumes, with the default implementations it ships
"""
import logging
import re
from typing import Optional, Protocol

from ..core.config import settings
from ..models.identity import mask_phone
from .identity_exceptions import IdentityValidationError

logger = logging.getLogger(__name__)

UK_MOBILE_PATTERN = re.compile(r"^\+447[0-9]{9}$")
SG_MOBILE_PATTERN = re.compile(r"^\+65[689][0-9]{7}$")
HANDLE_PATTERN = re.compile(r"^@[A-Za-z0-9_]+$")


class SmsSender(Protocol):
    async def send_sms(self, phone: str, message: str) -> bool:
        ...


class PhoneValidator(Protocol):
    def format_and_validate(self, raw: str) -> str:
        ...


class HandleValidator(Protocol):
    def validate(self, raw: str) -> bool:
        ...


class LoggingSmsSender:
    """Writes outgoing messages to the log instead of a carrier"""

    def __init__(self, sender_name: Optional[str] = None):
        self.sender_name = sender_name or settings.SMS_SENDER_NAME

    async def send_sms(self, phone: str, message: str) -> bool:
        logger.info(f"[{self.sender_name}] SMS to {mask_phone(phone)}")
        logger.debug(f"[{self.sender_name}] SMS body: {message}")
        return True


class DefaultPhoneValidator:
    """UK (+447) and Singapore (+65) mobile numbers"""

    def format_and_validate(self, raw: str) -> str:
        if not raw:
            raise IdentityValidationError("Phone number is required")
        phone = re.sub(r"[^0-9+]", "", raw)

        if phone.startswith("+44"):
            if not UK_MOBILE_PATTERN.match(phone):
                raise IdentityValidationError("Invalid UK mobile number format. Must start with +447")
        elif phone.startswith("+65"):
            if not SG_MOBILE_PATTERN.match(phone):
                raise IdentityValidationError("Invalid Singapore mobile number format")
        else:
            raise IdentityValidationError("Invalid phone format. Please use +44 or +65")
        return phone


class DefaultHandleValidator:
    """'@' followed by letters, digits and underscores"""

    def validate(self, raw: str) -> bool:
        return bool(raw) and bool(HANDLE_PATTERN.match(raw))
