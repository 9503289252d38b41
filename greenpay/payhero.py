"""PayHero M-Pesa STK push client.

Only what the wallet needs: start an STK push, poll its status, and parse the
asynchronous callback. Failures are reported through ``PayHeroResponse.status``
strings (``CREDENTIALS_MISSING``, ``INVALID_PHONE_NUMBER``, ``HTTP_500`` ...)
so callers can pass them straight to the client.
"""
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests

from greenpay.config import Config

logger = logging.getLogger(__name__)

BASE_URL = "https://backend.payhero.co.ke/api/v2"
LOCAL_PHONE_REGEX = re.compile(r"^0[17]\d{8}$")


@dataclass
class PayHeroResponse:
    success: bool
    status: str
    reference: str = ""
    checkout_request_id: str = ""


@dataclass
class CallbackResult:
    success: bool
    amount: Optional[Decimal]
    reference: Optional[str]
    mpesa_receipt_number: Optional[str]
    phone: Optional[str]
    status: Optional[str]
    result_desc: Optional[str]


def normalize_phone(phone_number):
    """Format a Kenyan number as the 10 digit ``07xxxxxxxx`` PayHero wants.

    Returns ``(phone, None)`` on success or ``(None, error_status)``.
    """
    clean = re.sub(r"[+\s-]", "", str(phone_number or ""))
    if clean.startswith("254"):
        clean = "0" + clean[3:]
    elif clean.startswith("7") or clean.startswith("1"):
        clean = "0" + clean
    elif not clean.startswith("0"):
        return None, "INVALID_PHONE_FORMAT"

    if not LOCAL_PHONE_REGEX.match(clean):
        return None, "INVALID_PHONE_NUMBER"
    return clean, None


def generate_reference():
    timestamp = str(int(time.time() * 1000))
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"GPY{timestamp[-8:]}{suffix}"


def parse_callback(payload):
    """Extract the fields we act on from a PayHero callback body."""
    response = (payload or {}).get("response") or {}
    try:
        amount = Decimal(str(response["Amount"])) if response.get("Amount") is not None else None
    except (InvalidOperation, ValueError):
        amount = None
    result_code = response.get("ResultCode")
    return CallbackResult(
        success=str(result_code) == "0" and response.get("Status") == "Success",
        amount=amount,
        reference=response.get("ExternalReference"),
        mpesa_receipt_number=response.get("MpesaReceiptNumber"),
        phone=response.get("Phone"),
        status=response.get("Status"),
        result_desc=response.get("ResultDesc"),
    )


class PayHeroClient:
    def __init__(self, username=None, password=None, channel_id=None, session=None):
        self.username = username if username is not None else Config.PAYHERO_USERNAME
        self.password = password if password is not None else Config.PAYHERO_PASSWORD
        self.channel_id = channel_id if channel_id is not None else Config.PAYHERO_CHANNEL_ID
        self.session = session or requests.Session()

    def has_credentials(self):
        return bool(self.username and self.password and self.channel_id)

    def initiate_mpesa_payment(self, amount, phone_number, external_reference,
                               customer_name=None, callback_url=None):
        """Send an STK push for ``amount`` KES (whole shillings)."""
        if not self.has_credentials():
            logger.error("PayHero credentials not available")
            return PayHeroResponse(success=False, status="CREDENTIALS_MISSING")

        phone, error = normalize_phone(phone_number)
        if error:
            logger.error(f"Invalid phone number for PayHero: {phone_number!r} ({error})")
            return PayHeroResponse(success=False, status=error)

        payload = {
            "amount": int(amount),
            "phone_number": phone,
            "channel_id": self.channel_id,
            "provider": "m-pesa",
            "external_reference": external_reference,
            "customer_name": customer_name,
            "callback_url": callback_url or Config.PAYHERO_CALLBACK_URL,
        }
        logger.info(
            f"PayHero payment request: amount={payload['amount']}, phone={phone}, "
            f"reference={external_reference}, channel_id={self.channel_id}"
        )

        try:
            response = self.session.post(
                f"{BASE_URL}/payments",
                json=payload,
                auth=(self.username, self.password),
                timeout=Config.GATEWAY_TIMEOUT_SECONDS,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"PayHero payment initiation error: {e}")
            return PayHeroResponse(success=False, status="ERROR")

        if not response.ok:
            logger.error(f"PayHero HTTP error: {response.status_code} {data}")
            return PayHeroResponse(success=False, status=f"HTTP_{response.status_code}")

        return PayHeroResponse(
            success=bool(data.get("success")),
            status=data.get("status") or "FAILED",
            reference=data.get("reference") or "",
            checkout_request_id=data.get("CheckoutRequestID") or "",
        )

    def check_transaction_status(self, reference):
        """Returns ``(ok, status, data)``; status is PayHero's, e.g. ``SUCCESS``, ``QUEUED``, ``FAILED``."""
        try:
            response = self.session.get(
                f"{BASE_URL}/transaction-status",
                params={"reference": reference},
                auth=(self.username, self.password),
                timeout=Config.GATEWAY_TIMEOUT_SECONDS,
            )
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"PayHero transaction status check error: {e}")
            return False, "ERROR", {}

        logger.info(f"PayHero status for {reference}: http={response.status_code}, status={data.get('status')}")
        if not response.ok:
            return False, "ERROR", data
        return True, data.get("status") or "UNKNOWN", data


payhero_client = PayHeroClient()
