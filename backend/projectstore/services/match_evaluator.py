# services/match_evaluator.py
import re
from typing import Optional

from pydantic import BaseModel

from projectstore.models.payment_model import PaymentClaim, VerificationError
from projectstore.services.txn_extractor import ExtractedCandidate

# Standard wallets round to whole rupees; Raast transfers are exact
STANDARD_AMOUNT_TOLERANCE = 1.0
PEER_AMOUNT_TOLERANCE = 0.01
REQUIRED_CURRENCY = "PKR"

MIN_SUBSTRING_LENGTH = 8
MAX_SANITIZED_LENGTH_DELTA = 4
MIN_SUFFIX_ID_LENGTH = 12
SUFFIX_LENGTH = 10

_NON_ALNUM = re.compile(r"[^a-z0-9]")


class MatchResult(BaseModel):
    accepted: bool
    message: str
    reason: Optional[VerificationError] = None
    tier: Optional[int] = None
    details: Optional[dict] = None

    @property
    def id_matched(self) -> bool:
        return self.tier is not None


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def id_match_tier(candidate_id: Optional[str], claimed_id: Optional[str]) -> Optional[int]:
    """
    Compare a transaction id read from an email with the one the buyer typed.

    Tiers are tried strictly in order and the first that holds is returned:

    1. exact (case-insensitive, trimmed)
    2. claimed id contains the email id, email id at least 8 chars
    3. email id contains the claimed id, claimed id at least 8 chars
    4. equal once punctuation/whitespace is removed, lengths within 4
    5. both at least 12 chars and the last 10 chars agree

    Returns None when no tier holds.
    """
    found = _normalize(candidate_id)
    claimed = _normalize(claimed_id)
    if not found or not claimed:
        return None

    if found == claimed:
        return 1
    if len(found) >= MIN_SUBSTRING_LENGTH and found in claimed:
        return 2
    if len(claimed) >= MIN_SUBSTRING_LENGTH and claimed in found:
        return 3

    sanitized_found = _NON_ALNUM.sub("", found)
    sanitized_claimed = _NON_ALNUM.sub("", claimed)
    if (
        sanitized_found
        and sanitized_found == sanitized_claimed
        and abs(len(found) - len(claimed)) <= MAX_SANITIZED_LENGTH_DELTA
    ):
        return 4

    if (
        len(found) >= MIN_SUFFIX_ID_LENGTH
        and len(claimed) >= MIN_SUFFIX_ID_LENGTH
        and found[-SUFFIX_LENGTH:] == claimed[-SUFFIX_LENGTH:]
    ):
        return 5

    return None


def _reject(reason: VerificationError, message: str, tier: Optional[int], details: Optional[dict] = None) -> MatchResult:
    return MatchResult(accepted=False, reason=reason, message=message, tier=tier, details=details)


def _amount_ok(found: float, expected: float, peer_transfer: bool) -> bool:
    if peer_transfer:
        return abs(found - expected) < PEER_AMOUNT_TOLERANCE
    return (
        abs(found - expected) < STANDARD_AMOUNT_TOLERANCE
        and found >= expected - STANDARD_AMOUNT_TOLERANCE
    )


def matches(candidate: ExtractedCandidate, claim: PaymentClaim) -> MatchResult:
    tier = id_match_tier(candidate.txn_id, claim.claimed_txn_id)
    if tier is None:
        # Never fall back to amount-only acceptance
        return _reject(VerificationError.TXNID_NOT_FOUND, "id mismatch", None)

    peer_transfer = claim.method.is_peer_transfer

    if peer_transfer:
        if not claim.sender_name:
            return _reject(
                VerificationError.MISSING_SENDER_ACCOUNT,
                "Sender account name is required for JazzCash to NayaPay transfers",
                tier,
            )
        if not candidate.sender_name:
            return _reject(VerificationError.MISSING_SENDER_INFO, "Sender account name not found in email", tier)
        if not candidate.receiver_name:
            return _reject(VerificationError.MISSING_RECEIVER_INFO, "Receiver account name not found in email", tier)
        if candidate.sender_name.strip() != claim.sender_name.strip():
            return _reject(
                VerificationError.SENDER_ACCOUNT_MISMATCH,
                f"Sender account name mismatch. Expected: {claim.sender_name.strip()}, Found: {candidate.sender_name.strip()}",
                tier,
            )
        if not candidate.raast_id:
            return _reject(VerificationError.MISSING_RAAST_ID, "Raast ID not found in email", tier)
        if not candidate.transaction_time:
            return _reject(VerificationError.MISSING_TRANSACTION_TIME, "Transaction time not found in email", tier)

    expected = claim.expected_amount
    if expected is None or candidate.amount is None or not _amount_ok(candidate.amount, expected, peer_transfer):
        found = "none" if candidate.amount is None else f"PKR {candidate.amount:,.2f}"
        wanted = "unknown" if expected is None else f"PKR {expected:,.2f}"
        return _reject(
            VerificationError.AMOUNT_MISMATCH,
            f"Amount mismatch. Expected: {wanted}, Found: {found}",
            tier,
            details={"expected": expected, "found": candidate.amount, "currency": candidate.currency},
        )

    if not peer_transfer and candidate.currency != REQUIRED_CURRENCY:
        return _reject(
            VerificationError.AMOUNT_MISMATCH,
            f"Currency mismatch. Expected: {REQUIRED_CURRENCY}, Found: {candidate.currency}",
            tier,
            details={"expected": expected, "found": candidate.amount, "currency": candidate.currency},
        )

    if not candidate.valid:
        return _reject(
            VerificationError.VERIFICATION_FAILED,
            "Transaction ID found but verification failed",
            tier,
        )

    return MatchResult(accepted=True, message="Payment details match", tier=tier)
