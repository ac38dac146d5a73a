# models/payment_model.py
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional
from datetime import datetime, timezone


class PaymentMethod(str, Enum):
    NAYAPAY = "NayaPay"
    JAZZCASH = "JazzCash"
    EASYPAISA = "Easypaisa"
    JAZZCASH_TO_NAYAPAY = "JazzCashToNayaPay"

    @property
    def is_peer_transfer(self) -> bool:
        return self is PaymentMethod.JAZZCASH_TO_NAYAPAY


class VerificationError(str, Enum):
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"
    NO_EMAILS_FOUND = "NO_EMAILS_FOUND"
    TXNID_NOT_FOUND = "TXNID_NOT_FOUND"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    MISSING_SENDER_ACCOUNT = "MISSING_SENDER_ACCOUNT"
    MISSING_SENDER_INFO = "MISSING_SENDER_INFO"
    MISSING_RECEIVER_INFO = "MISSING_RECEIVER_INFO"
    MISSING_RAAST_ID = "MISSING_RAAST_ID"
    MISSING_TRANSACTION_TIME = "MISSING_TRANSACTION_TIME"
    SENDER_ACCOUNT_MISMATCH = "SENDER_ACCOUNT_MISMATCH"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    SERVER_ERROR = "SERVER_ERROR"


MAX_TXN_ID_LENGTH = 128


def transaction_key(txn_id: str) -> str:
    """
    Canonical form of a transaction id, used as the Firestore document id
    of the `transactions` collection. Two claims that normalize to the same
    key are the same payment.
    """
    key = (txn_id or "").strip().upper()
    if not key:
        raise ValueError("Transaction ID is required")
    if len(key) > MAX_TXN_ID_LENGTH:
        raise ValueError(f"Transaction ID must be at most {MAX_TXN_ID_LENGTH} characters")
    if "/" in key or key in (".", "..") or (key.startswith("__") and key.endswith("__")):
        raise ValueError("Transaction ID contains invalid characters")
    return key


# ========================================
# REQUESTS
# ========================================
class VerifyPaymentRequest(BaseModel):
    method: PaymentMethod
    txn_id: str = Field(..., alias="txnId")
    product_id: str = Field(..., alias="productId", min_length=1)
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    sender_amount: Optional[float] = Field(default=None, alias="senderAmount")

    @field_validator("txn_id")
    @classmethod
    def validate_txn_id(cls, v: str) -> str:
        transaction_key(v)
        return v.strip()

    model_config = {"populate_by_name": True}


class InitializePaymentRequest(BaseModel):
    product_id: str = Field(..., alias="productId", min_length=1)
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")

    model_config = {"populate_by_name": True}


class PaymentClaim(BaseModel):
    """Buyer-asserted payment facts. Never persisted as-is."""
    method: PaymentMethod
    claimed_txn_id: str
    product_id: str
    user_id: str
    sender_name: Optional[str] = None
    sender_amount: Optional[float] = None
    # Product price, filled in once the product is loaded
    expected_amount: Optional[float] = None

    @classmethod
    def from_request(cls, payload: VerifyPaymentRequest, user_id: str) -> "PaymentClaim":
        return cls(
            method=payload.method,
            claimed_txn_id=payload.txn_id,
            product_id=payload.product_id,
            user_id=user_id,
            sender_name=payload.sender_name,
            sender_amount=payload.sender_amount,
        )


# ========================================
# PERSISTED TRANSACTION
# ========================================
class Transaction(BaseModel):
    """One verified purchase. Document id is transaction_key(txn_id)."""
    id: str = Field(..., alias="_id")
    user_id: str
    product_id: str
    method: PaymentMethod

    txn_id: str
    amount: float
    currency: str = "PKR"

    verified: bool = True
    verified_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    download_url: Optional[str] = None
    receipt_id: Optional[str] = None

    # Peer transfers only
    sender_name: Optional[str] = None
    receiver_name: Optional[str] = None
    raast_id: Optional[str] = None
    transaction_time: Optional[str] = None

    # Id as printed in the matched confirmation email
    email_txn_id: Optional[str] = None
    email_subject: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def only_verified(self):
        if not self.verified:
            raise ValueError("Transactions are only stored once verified")
        return self

    model_config = {
        "from_attributes": True,
        "populate_by_name": True
    }


class VerificationResult(BaseModel):
    """Outcome of one verification request, success or structured rejection."""
    success: bool
    message: str
    error_type: Optional[VerificationError] = None
    status_code: int = 200
    already_used: bool = False
    transaction: Optional[Transaction] = None
    details: Optional[dict] = None

    @classmethod
    def rejected(cls, error_type: Optional[VerificationError], message: str, status_code: int = 400, **extra):
        return cls(success=False, message=message, error_type=error_type, status_code=status_code, **extra)

    def to_response(self) -> dict:
        body = {"success": self.success, "message": self.message}
        if self.error_type:
            body["errorType"] = self.error_type.value
        if self.already_used:
            body["alreadyUsed"] = True
        if self.details:
            body["details"] = self.details
        if self.transaction:
            body["transaction"] = self.transaction.model_dump(mode="json", by_alias=True)
        return body
