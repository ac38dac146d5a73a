# services/txn_extractor.py
"""
Transaction detail extraction from wallet confirmation emails.

Every field is read with an ordered tuple of compiled patterns, most specific
first. The first pattern that captures a non-empty value wins. Extraction is
lossy on purpose: a missing or odd-looking id is the match evaluator's
problem, so nothing in here raises on malformed input.
"""
import re
from typing import Optional, Pattern, Tuple, Dict

from bs4 import BeautifulSoup
from pydantic import BaseModel

from projectstore.models.payment_model import PaymentMethod

DEFAULT_CURRENCY = "PKR"

_FLAGS = re.IGNORECASE
_TAG_RE = re.compile(r"<[^>]*>")
_HTML_HINT_RE = re.compile(r"<\s*(html|body|div|table|tr|td|p|br|span|font)\b", _FLAGS)
_BLANK_LINES_RE = re.compile(r"\n[ \t\r\xa0]*(?:\n[ \t\r\xa0]*)+")
_AMOUNT_RE = re.compile(r"(?<![0-9])(?<![0-9]\.)[0-9][0-9,]*(?:\.[0-9]+)?(?![0-9]|\.[0-9])")

# Value after a label: same line ("Label: value") or next line ("Label\nvalue")
_NEXT_VALUE = r"[ \t]*[:#\-]?[ \t]*(?:\r?\n[ \t]*)?"

_NUMBER = r"([0-9][0-9,]*(?:\.[0-9]+)?)"


def _labeled(label: str, value: str = r"([^\r\n]+)") -> Pattern:
    return re.compile(label + _NEXT_VALUE + value, _FLAGS)


# ========================================
# TRANSACTION ID PATTERNS
# ========================================
_TXN_ID_LABELED = re.compile(
    r"Transaction\s*(?:ID|No\.?|Number)\s*[:#\-]?\s*#?\s*([A-Za-z0-9][A-Za-z0-9\-_]*)", _FLAGS
)
_TID_LABELED = re.compile(r"\bTID\s*[:#\-]?\s*#?\s*([A-Za-z0-9][A-Za-z0-9\-_]*)", _FLAGS)
_TRX_ID_LABELED = re.compile(r"\bTrx\.?\s*ID\s*[:#\-]?\s*#?\s*([A-Za-z0-9][A-Za-z0-9\-_]*)", _FLAGS)
_REFERENCE_LABELED = re.compile(
    r"\bRef(?:erence)?\.?\s*(?:No\.?|Number|ID)?\s*[:#\-]\s*#?\s*([A-Za-z0-9][A-Za-z0-9\-_]{5,})", _FLAGS
)
# Last resort: any long alphanumeric token carrying at least one digit
_GENERIC_TOKEN = re.compile(r"\b((?=[A-Za-z0-9]*[0-9])[A-Za-z0-9]{8,})\b")

TXN_ID_PATTERNS: Dict[PaymentMethod, Tuple[Pattern, ...]] = {
    PaymentMethod.NAYAPAY: (
        _TXN_ID_LABELED,
        _TID_LABELED,
        _REFERENCE_LABELED,
        _GENERIC_TOKEN,
    ),
    PaymentMethod.JAZZCASH: (
        _TID_LABELED,
        _TXN_ID_LABELED,
        _REFERENCE_LABELED,
        _GENERIC_TOKEN,
    ),
    PaymentMethod.EASYPAISA: (
        _TRX_ID_LABELED,
        _TXN_ID_LABELED,
        _REFERENCE_LABELED,
        _GENERIC_TOKEN,
    ),
    PaymentMethod.JAZZCASH_TO_NAYAPAY: (
        _labeled(r"Transaction\s+ID", r"#?([A-Za-z0-9]+)"),
        _TXN_ID_LABELED,
        _TID_LABELED,
        _GENERIC_TOKEN,
    ),
}

# ========================================
# AMOUNT PATTERNS
# ========================================
_AMOUNT_LABELED = re.compile(
    r"Amount\s*(?:Paid|Received|Transferred|Sent)?\s*[:\-]?\s*(?:PKR|Rs\.?)?\s*" + _NUMBER, _FLAGS
)
_AMOUNT_SYMBOL_FIRST = re.compile(r"(?:PKR|Rs\.?)\s*" + _NUMBER, _FLAGS)
_AMOUNT_SYMBOL_LAST = re.compile(_NUMBER + r"\s*PKR\b", _FLAGS)

AMOUNT_PATTERNS: Dict[PaymentMethod, Tuple[Pattern, ...]] = {
    method: (_AMOUNT_LABELED, _AMOUNT_SYMBOL_FIRST, _AMOUNT_SYMBOL_LAST)
    for method in PaymentMethod
}

CURRENCY_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"Currency\s*[:\-]?\s*([A-Za-z]{3})\b", _FLAGS),
    re.compile(r"\b(PKR|USD|EUR|GBP|AED|SAR)\s*[0-9]"),
)

# ========================================
# PEER TRANSFER (JazzCash -> NayaPay over Raast)
# ========================================
SENDER_NAME_PATTERN = _labeled(r"Source\s+Acc(?:ount)?\.?\s+Title")
SENDER_BANK_PATTERN = _labeled(r"Source\s+Bank")
RECEIVER_NAME_PATTERN = _labeled(r"Destination\s+Acc(?:ount)?\.?\s+Title")
RAAST_ID_PATTERN = _labeled(r"Raast\s+ID", r"([A-Za-z0-9]+)")
TRANSACTION_TIME_PATTERN = _labeled(r"Transaction\s+(?:Time|Date\s*(?:&|and)\s*Time)")


class ExtractedCandidate(BaseModel):
    """One email's unverified transaction data."""
    txn_id: Optional[str] = None
    amount: Optional[float] = None
    currency: str = DEFAULT_CURRENCY

    sender_name: Optional[str] = None
    sender_bank: Optional[str] = None
    receiver_name: Optional[str] = None
    raast_id: Optional[str] = None
    transaction_time: Optional[str] = None

    valid: bool = False

    model_config = {"frozen": True}


def strip_markup(value: str) -> str:
    return _TAG_RE.sub("", value).strip()


def email_text(body: str) -> str:
    """Flatten an HTML body to text, one element per line. Plain text is returned as-is."""
    if not body:
        return ""
    if _HTML_HINT_RE.search(body):
        text = BeautifulSoup(body, "html.parser").get_text("\n")
        return _BLANK_LINES_RE.sub("\n", text)
    return body


def first_match(text: str, patterns: Tuple[Pattern, ...]) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        value = strip_markup(match.group(1))
        if value:
            return value
    return None


def parse_amount(raw: Optional[str]) -> Optional[float]:
    """'Rs. 1,250.00' -> 1250.0. Anything unparsable is None, never zero."""
    if not raw:
        return None
    match = _AMOUNT_RE.search(raw)
    if not match:
        return None
    return float(match.group(0).replace(",", ""))


def extract(email_body: str, method: PaymentMethod) -> ExtractedCandidate:
    text = email_text(email_body or "")

    txn_id = first_match(text, TXN_ID_PATTERNS[method])
    amount = parse_amount(first_match(text, AMOUNT_PATTERNS[method]))

    if method.is_peer_transfer:
        fields = {
            "sender_name": first_match(text, (SENDER_NAME_PATTERN,)),
            "sender_bank": first_match(text, (SENDER_BANK_PATTERN,)),
            "receiver_name": first_match(text, (RECEIVER_NAME_PATTERN,)),
            "raast_id": first_match(text, (RAAST_ID_PATTERN,)),
            "transaction_time": first_match(text, (TRANSACTION_TIME_PATTERN,)),
        }
        valid = txn_id is not None and amount is not None and all(v is not None for v in fields.values())
        return ExtractedCandidate(
            txn_id=txn_id,
            amount=amount,
            currency=DEFAULT_CURRENCY,
            valid=valid,
            **fields,
        )

    currency = first_match(text, CURRENCY_PATTERNS)
    return ExtractedCandidate(
        txn_id=txn_id,
        amount=amount,
        currency=currency.upper() if currency else DEFAULT_CURRENCY,
        valid=txn_id is not None and amount is not None,
    )
