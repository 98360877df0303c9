import asyncio
import re
import uuid
import logging
from decimal import Decimal
from typing import Optional

from src.core.config import PAYMENT_SIMULATION_DELAY
from src.models.schemas import PaymentDetails, PaymentMethod
from src.services.exceptions import InvalidPaymentDetails

logger = logging.getLogger(__name__)

_EXPIRY_PATTERN = re.compile(r"^(0[1-9]|1[0-2])/\d{2}$")


def _digits(value: Optional[str]) -> str:
    return re.sub(r"[\s-]", "", value or "")


class PaymentSimulator:
    """
    Stand-in for an external payment gateway.

    Only the format of the payment details is checked; every well-formed
    charge succeeds after ``delay`` seconds. No money moves anywhere.
    """

    def __init__(self, delay: float = PAYMENT_SIMULATION_DELAY):
        self.delay = delay

    def validate(self, method: PaymentMethod, details: Optional[PaymentDetails]) -> None:
        """Raise InvalidPaymentDetails unless ``details`` fit ``method``"""
        if method == PaymentMethod.BALANCE:
            return
        details = details or PaymentDetails()

        if method == PaymentMethod.EXTERNAL_GCASH:
            number = _digits(details.gcash_number)
            if len(number) < 10 or not number.isdigit():
                raise InvalidPaymentDetails("Please enter a valid GCash number")
            return

        if method == PaymentMethod.EXTERNAL_CARD:
            number = _digits(details.card_number)
            if len(number) < 16 or not number.isdigit():
                raise InvalidPaymentDetails("Please enter a valid card number")
            if not (details.card_name or "").strip():
                raise InvalidPaymentDetails("Please enter the cardholder name")
            if not details.card_expiry or not _EXPIRY_PATTERN.match(details.card_expiry.strip()):
                raise InvalidPaymentDetails("Please enter card expiry date")
            cvv = (details.card_cvv or "").strip()
            if len(cvv) < 3 or not cvv.isdigit():
                raise InvalidPaymentDetails("Please enter a valid CVV")
            return

        raise InvalidPaymentDetails(f"Unsupported payment method: {method}")

    async def charge(self, method: PaymentMethod, details: Optional[PaymentDetails], amount: Decimal) -> str:
        """Validate and "charge"; returns a simulated transaction reference"""
        self.validate(method, details)
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        reference = f"SIM-{uuid.uuid4().hex[:12].upper()}"
        logger.info(f"Simulated {method.value} charge of {amount} accepted ({reference})")
        return reference

    def void(self, reference: str, amount: Decimal) -> None:
        """Release a simulated charge after the order could not be completed"""
        logger.warning(f"Voiding simulated charge {reference} of {amount}")
