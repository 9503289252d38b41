import logging

import requests

from greenpay.config import Config

logger = logging.getLogger(__name__)

BASE_URL = "https://api.paystack.co"


class PaystackClient:
    """Paystack card / mobile money checkout. Amounts go over the wire in minor units."""

    def __init__(self, secret_key=None, session=None):
        self.secret_key = secret_key if secret_key is not None else Config.PAYSTACK_SECRET_KEY
        self.session = session or requests.Session()

    @property
    def is_configured(self):
        return bool(self.secret_key)

    def _headers(self):
        return {"Authorization": f"Bearer {self.secret_key}"}

    def initialize_payment(self, email, amount_minor, reference, currency="USD", callback_url=None):
        if not self.is_configured:
            return {"status": False, "message": "Paystack is not configured"}

        payload = {
            "email": email,
            "amount": int(amount_minor),
            "reference": reference,
            "currency": currency,
            "channels": ["card", "bank", "ussd", "qr", "mobile_money", "bank_transfer"],
        }
        if callback_url or Config.PAYSTACK_CALLBACK_URL:
            payload["callback_url"] = callback_url or Config.PAYSTACK_CALLBACK_URL

        try:
            response = self.session.post(
                f"{BASE_URL}/transaction/initialize",
                json=payload,
                headers=self._headers(),
                timeout=Config.GATEWAY_TIMEOUT_SECONDS,
            )
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Paystack initialization error: {e}")
            return {"status": False, "message": "Payment initialization failed"}

    def verify_payment(self, reference):
        if not self.is_configured:
            return {"status": False, "message": "Paystack is not configured"}
        try:
            response = self.session.get(
                f"{BASE_URL}/transaction/verify/{reference}",
                headers=self._headers(),
                timeout=Config.GATEWAY_TIMEOUT_SECONDS,
            )
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Paystack verification error: {e}")
            return {"status": False, "message": "Payment verification failed"}


paystack_client = PaystackClient()
