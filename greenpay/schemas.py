from pydantic import BaseModel, Field, validator
from typing import Literal, Optional, Union
from decimal import Decimal

from greenpay.errors import ValidationFailed
from greenpay.money import parse_amount, parse_fee, normalize_currency

Amount = Union[Decimal, str]


def _amount(v):
    try:
        return parse_amount(v)
    except ValidationFailed as e:
        raise ValueError(e.message)


def _currency(v):
    try:
        return normalize_currency(v)
    except ValidationFailed as e:
        raise ValueError(e.message)


def _user_id(v):
    if not v or not v.strip():
        raise ValueError('User ID cannot be empty')
    if len(v) > 100:
        raise ValueError('User ID too long (max 100 characters)')
    return v.strip()


class TransferRequest(BaseModel):
    """
    Peer-to-peer transfer between two GreenPay wallets.
    """
    from_user_id: str = Field(..., alias="fromUserId", description="Sender user ID")
    to_user_id: str = Field(..., alias="toUserId", description="Recipient user ID")
    amount: Amount = Field(..., description="Amount in the given currency, max 2 decimals")
    currency: str = Field(default="USD", description="USD or KES")
    description: Optional[str] = Field(None, max_length=255)
    reference: Optional[str] = Field(None, max_length=64, description="Client idempotency key; a replay returns the original transfer")

    @validator('from_user_id', 'to_user_id')
    def user_ids_valid(cls, v):
        return _user_id(v)

    @validator('amount')
    def amount_valid(cls, v):
        return _amount(v)

    @validator('currency')
    def currency_valid(cls, v):
        return _currency(v)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "fromUserId": "user_12345",
                "toUserId": "user_67890",
                "amount": "40.00",
                "currency": "USD",
                "description": "Dinner"
            }
        }


class ExchangeRequest(BaseModel):
    """
    Same-user conversion between the USD and KES wallets.
    """
    user_id: str = Field(..., alias="userId")
    amount: Amount = Field(..., description="Amount in the source currency")
    from_currency: str = Field(..., alias="fromCurrency")
    to_currency: str = Field(..., alias="toCurrency")

    @validator('user_id')
    def user_id_valid(cls, v):
        return _user_id(v)

    @validator('amount')
    def amount_valid(cls, v):
        return _amount(v)

    @validator('from_currency', 'to_currency')
    def currencies_valid(cls, v):
        return _currency(v)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "userId": "user_12345",
                "amount": "50.00",
                "fromCurrency": "USD",
                "toCurrency": "KES"
            }
        }


class DepositInitRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    amount: Amount
    currency: str = Field(default="USD")

    @validator('user_id')
    def user_id_valid(cls, v):
        return _user_id(v)

    @validator('amount')
    def amount_valid(cls, v):
        return _amount(v)

    @validator('currency')
    def currency_valid(cls, v):
        return _currency(v)

    class Config:
        populate_by_name = True


class DepositVerifyRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    reference: str = Field(..., min_length=1, max_length=100, description="Paystack transaction reference")

    @validator('user_id')
    def user_id_valid(cls, v):
        return _user_id(v)

    class Config:
        populate_by_name = True


class TransactionCreateRequest(BaseModel):
    """
    Generic transaction submission. Only withdrawals are accepted here; they
    stay pending until an admin approves them.
    """
    user_id: str = Field(..., alias="userId")
    type: Literal['withdraw'] = Field(..., description="Transaction type")
    amount: Amount
    currency: str = Field(default="USD")
    fee: Optional[Amount] = Field(default="0.00", description="Withdrawal fee, debited with the amount on approval")
    description: Optional[str] = Field(None, max_length=255)

    @validator('user_id')
    def user_id_valid(cls, v):
        return _user_id(v)

    @validator('amount')
    def amount_valid(cls, v):
        return _amount(v)

    @validator('currency')
    def currency_valid(cls, v):
        return _currency(v)

    @validator('fee')
    def fee_valid(cls, v):
        try:
            return parse_fee(v)
        except ValidationFailed as e:
            raise ValueError(e.message)

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "userId": "user_12345",
                "type": "withdraw",
                "amount": "100.00",
                "currency": "USD",
                "fee": "2.00"
            }
        }


class AirtimeRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    phone_number: str = Field(..., alias="phoneNumber")
    amount: Amount = Field(..., description="KES amount")
    currency: str = Field(default="KES")
    provider: Literal['safaricom', 'airtel', 'telkom']

    @validator('user_id')
    def user_id_valid(cls, v):
        return _user_id(v)

    @validator('amount')
    def amount_valid(cls, v):
        return _amount(v)

    @validator('currency')
    def currency_is_kes(cls, v):
        if str(v).upper() != "KES":
            raise ValueError('Airtime is paid from the KES wallet only')
        return "KES"

    class Config:
        populate_by_name = True


class CardPaymentRequest(BaseModel):
    user_id: str = Field(..., alias="userId")
    phone_number: Optional[str] = Field(None, alias="phoneNumber", description="M-Pesa number; defaults to the profile phone")

    @validator('user_id')
    def user_id_valid(cls, v):
        return _user_id(v)

    class Config:
        populate_by_name = True


class AdminReviewRequest(BaseModel):
    admin_notes: Optional[str] = Field(None, alias="adminNotes", max_length=500)

    class Config:
        populate_by_name = True
