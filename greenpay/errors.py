"""Domain errors for money movement.

Every error carries the HTTP status the API answers with and a human readable
message; the FastAPI handler in ``greenpay.main`` renders them as
``{"message": ...}``.
"""


class WalletError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(WalletError):
    status_code = 400
    default_message = "Invalid request"


class InsufficientBalance(WalletError):
    status_code = 400
    default_message = "Insufficient balance"


class Forbidden(WalletError):
    status_code = 403
    default_message = "Admin access required"


class NotFound(WalletError):
    status_code = 404
    default_message = "Not found"


class AccountBusy(WalletError):
    status_code = 409
    default_message = "Another operation is in progress on this account, please retry"


class DuplicateReference(WalletError):
    status_code = 409
    default_message = "Duplicate transaction reference"


class TransactionFailed(WalletError):
    status_code = 500
    default_message = "Transaction failed"


class ServiceUnavailable(WalletError):
    status_code = 503
    default_message = "Service temporarily unavailable"


class GatewayError(WalletError):
    """Payment gateway refused or failed a request.

    ``gateway_status`` is the provider's own status string (e.g.
    ``INVALID_PHONE_NUMBER``) and is passed through to the client.
    """

    def __init__(self, gateway_status, message=None, status_code=400):
        self.gateway_status = gateway_status
        self.status_code = status_code
        super().__init__(message or f"Payment gateway error: {gateway_status}")
