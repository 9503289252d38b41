import logging
from decimal import Decimal

import requests

from greenpay.config import Config
from greenpay.money import normalize_currency

logger = logging.getLogger(__name__)

BASE_URL = "https://v6.exchangerate-api.com/v6"

# Used when no API key is configured or the API is unreachable
FALLBACK_RATES = {
    "USD": {"KES": Decimal("129")},
    "KES": {"USD": Decimal("0.0077")},
}


class ExchangeRateService:
    def __init__(self, api_key=None, session=None):
        self.api_key = api_key if api_key is not None else Config.EXCHANGERATE_API_KEY
        self.session = session or requests.Session()

    def get_exchange_rate(self, from_currency, to_currency):
        """Rate to multiply a ``from_currency`` amount by, as a Decimal."""
        from_currency = normalize_currency(from_currency)
        to_currency = normalize_currency(to_currency)
        if from_currency == to_currency:
            return Decimal("1")
        if not self.api_key:
            return self.get_fallback_rate(from_currency, to_currency)

        try:
            response = self.session.get(
                f"{BASE_URL}/{self.api_key}/pair/{from_currency}/{to_currency}",
                timeout=Config.GATEWAY_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
            if data.get("result") != "success":
                raise ValueError(f"API error: {data.get('error-type')}")
            # str() first: the API returns a JSON float
            return Decimal(str(data["conversion_rate"]))
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.error(f"Exchange rate fetch error ({from_currency}->{to_currency}): {e}")
            return self.get_fallback_rate(from_currency, to_currency)

    @staticmethod
    def get_fallback_rate(from_currency, to_currency):
        return FALLBACK_RATES.get(from_currency, {}).get(to_currency, Decimal("1"))


exchange_rate_service = ExchangeRateService()
