# services/verification_service.py
"""
Payment verification orchestrator.

    START -> DUPLICATE_CHECK -> SEARCH -> EXTRACT_AND_MATCH -> COMMIT -> DONE

Any state may end in a structured rejection instead. The duplicate checks are
a courtesy; the store's batched create() at COMMIT is what actually
guarantees a payment is granted at most once, under the claimed id or the id
printed in its confirmation email, including under concurrent requests.

A replay by the original buyer re-runs the idempotent grant before it is
rejected, so a crash between COMMIT and the grant is repaired by retrying.
"""
import asyncio
import logging
from typing import Callable, List, Optional

from projectstore.models.payment_model import (
    PaymentClaim,
    PaymentMethod,
    Transaction,
    VerificationError,
    VerificationResult,
    transaction_key,
)
from projectstore.services.email_search import EmailSearchAdapter, EmailSearchError, RawEmail
from projectstore.services.grant_store import (
    DuplicateTransactionError,
    PRODUCTS,
    PurchaseGrantStore,
    RecordNotFoundError,
)
from projectstore.services.match_evaluator import PEER_AMOUNT_TOLERANCE, matches
from projectstore.services.txn_extractor import extract
from projectstore.utils.tokens import generate_secure_token

logger = logging.getLogger("projectstore")

SUCCESS_MESSAGE = "Payment verified successfully! Your purchase is complete."
DUPLICATE_MESSAGE = "This transaction ID has already been used"


class PaymentVerificationService:
    def __init__(
        self,
        email_search: EmailSearchAdapter,
        store: PurchaseGrantStore,
        token_factory: Callable[[], str] = generate_secure_token,
        search_days: int = 7,
        retry_days: int = 14,
        search_timeout: float = 30.0,
        download_prefix: str = "/api/payments/download/",
    ):
        self.email_search = email_search
        self.store = store
        self.token_factory = token_factory
        self.search_days = search_days
        self.retry_days = retry_days
        self.search_timeout = search_timeout
        self.download_prefix = download_prefix

    async def verify(self, claim: PaymentClaim) -> VerificationResult:
        try:
            return await self._verify(claim)
        except Exception as e:
            logger.error(f"Payment verification error for {claim.claimed_txn_id}: {e}", exc_info=True)
            return VerificationResult.rejected(
                VerificationError.SERVER_ERROR,
                "Error verifying payment. Please try again later.",
                status_code=500,
            )

    async def _verify(self, claim: PaymentClaim) -> VerificationResult:
        # ---------------- START ----------------
        rejection = self.validate_claim(claim)
        if rejection:
            return rejection

        product = await asyncio.to_thread(self.store.get_product, claim.product_id)
        if not product:
            return VerificationResult.rejected(VerificationError.PRODUCT_NOT_FOUND, "Product not found", status_code=404)
        claim = claim.model_copy(update={"expected_amount": product.price})

        if claim.method.is_peer_transfer and abs(claim.sender_amount - product.price) >= PEER_AMOUNT_TOLERANCE:
            return VerificationResult.rejected(
                VerificationError.AMOUNT_MISMATCH,
                f"Amount does not match product price. Expected: PKR {product.price:,.2f}, Got: PKR {claim.sender_amount:,.2f}",
                details={"expected": product.price, "found": claim.sender_amount, "currency": "PKR"},
            )

        # ---------------- DUPLICATE_CHECK ----------------
        existing = await asyncio.to_thread(self.store.find_by_txn_id, claim.claimed_txn_id)
        if existing:
            return await self._replay(claim, existing)

        # ---------------- SEARCH ----------------
        logger.info(
            f"Verifying payment → {claim.claimed_txn_id} | PKR {product.price:,.2f} | {claim.method.value}"
        )
        try:
            emails = await self._search(claim)
        except asyncio.TimeoutError:
            logger.error(f"Mailbox search timed out for {claim.claimed_txn_id}")
            return VerificationResult.rejected(
                VerificationError.SERVER_ERROR,
                "Payment confirmation search timed out. Please try again.",
                status_code=503,
            )
        except EmailSearchError as e:
            logger.error(f"Mailbox search failed for {claim.claimed_txn_id}: {e}", exc_info=True)
            return VerificationResult.rejected(
                VerificationError.SERVER_ERROR,
                "Payment confirmation search is unavailable. Please try again.",
                status_code=500,
            )

        if not emails:
            return VerificationResult.rejected(
                VerificationError.NO_EMAILS_FOUND,
                f"No {claim.method.value} payment confirmation found for transaction ID {claim.claimed_txn_id}",
            )

        # ---------------- EXTRACT_AND_MATCH ----------------
        for raw_email in emails:
            candidate = extract(raw_email.body, claim.method)
            result = matches(candidate, claim)
            logger.debug(
                f"Email '{raw_email.subject}' → id={candidate.txn_id} amount={candidate.amount} "
                f"tier={result.tier} accepted={result.accepted}"
            )

            if result.accepted:
                # ---------------- COMMIT ----------------
                return await self._commit(claim, raw_email, candidate)

            if result.id_matched:
                # An id match is conclusive for this claim
                logger.info(f"Payment {claim.claimed_txn_id} rejected: {result.reason.value}")
                return VerificationResult.rejected(result.reason, result.message, details=result.details)

        return VerificationResult.rejected(
            VerificationError.TXNID_NOT_FOUND,
            f"Transaction ID not found in recent {claim.method.value} emails",
        )

    def validate_claim(self, claim: PaymentClaim) -> Optional[VerificationResult]:
        if not claim.claimed_txn_id or not claim.claimed_txn_id.strip():
            return VerificationResult.rejected(None, "Transaction ID is required")
        if claim.method.is_peer_transfer:
            if not claim.sender_name or not claim.sender_name.strip():
                return VerificationResult.rejected(
                    VerificationError.MISSING_SENDER_ACCOUNT,
                    "Sender name is required for JazzCash to NayaPay transfers",
                )
            if claim.sender_amount is None:
                return VerificationResult.rejected(
                    None,
                    "Sender amount is required for JazzCash to NayaPay transfers",
                )
        return None

    async def _search(self, claim: PaymentClaim) -> List[RawEmail]:
        emails = await self._run_search(claim.method, self.search_days, claim)
        if emails:
            return emails

        logger.info(
            f"No emails for {claim.claimed_txn_id} in {self.search_days} days, "
            f"widening to all providers over {self.retry_days} days"
        )
        return await self._run_search(None, self.retry_days, claim)

    async def _run_search(self, method: Optional[PaymentMethod], days: int, claim: PaymentClaim) -> List[RawEmail]:
        return await asyncio.wait_for(
            asyncio.to_thread(
                self.email_search.search, method, days, claim.claimed_txn_id, claim.expected_amount
            ),
            timeout=self.search_timeout,
        )

    async def _commit(self, claim: PaymentClaim, raw_email: RawEmail, candidate) -> VerificationResult:
        product = await asyncio.to_thread(self.store.get_product, claim.product_id)
        if not product:
            return VerificationResult.rejected(VerificationError.PRODUCT_NOT_FOUND, "Product not found", status_code=404)
        user = await asyncio.to_thread(self.store.get_user, claim.user_id)
        if not user:
            return VerificationResult.rejected(VerificationError.USER_NOT_FOUND, "User not found", status_code=404)

        if candidate.txn_id:
            existing = await asyncio.to_thread(self.store.find_by_txn_id, candidate.txn_id)
            if existing:
                return await self._replay(claim, existing)

        peer_transfer = claim.method.is_peer_transfer
        transaction = Transaction(
            _id=transaction_key(claim.claimed_txn_id),
            user_id=claim.user_id,
            product_id=claim.product_id,
            method=claim.method,
            txn_id=claim.claimed_txn_id,
            amount=claim.expected_amount,
            verified=True,
            sender_name=candidate.sender_name if peer_transfer else None,
            receiver_name=candidate.receiver_name if peer_transfer else None,
            raast_id=candidate.raast_id if peer_transfer else None,
            transaction_time=candidate.transaction_time if peer_transfer else None,
            email_txn_id=candidate.txn_id,
            email_subject=raw_email.subject,
        )

        try:
            transaction = await asyncio.to_thread(self.store.create_verified_transaction, transaction)
        except DuplicateTransactionError:
            logger.warning(f"Concurrent replay of {claim.claimed_txn_id} lost the race at commit")
            return self._duplicate()

        try:
            transaction = await self._grant(transaction)
        except RecordNotFoundError as e:
            logger.error(f"❌ Transaction {transaction.id} stored but grant failed: {e}")
            return self._missing(e)

        logger.info(f"✅ Payment VERIFIED → {transaction.txn_id} | user {claim.user_id} | product {claim.product_id}")
        return VerificationResult(success=True, message=SUCCESS_MESSAGE, transaction=transaction)

    async def _grant(self, transaction: Transaction) -> Transaction:
        await asyncio.to_thread(self.store.grant, transaction)
        return await asyncio.to_thread(
            self.store.ensure_download_url, transaction, self.token_factory, self.download_prefix
        )

    async def _replay(self, claim: PaymentClaim, existing: Transaction) -> VerificationResult:
        if existing.user_id == claim.user_id and existing.product_id == claim.product_id:
            logger.info(f"♻️ Replay of {existing.id} by its buyer, re-running grant")
            try:
                await self._grant(existing)
            except RecordNotFoundError as e:
                logger.error(f"❌ Grant of {existing.id} still failing: {e}")
                return self._missing(e)
        logger.info(f"Replay rejected for {claim.claimed_txn_id} (already granted as {existing.id})")
        return self._duplicate()

    def _missing(self, error: RecordNotFoundError) -> VerificationResult:
        if error.collection == PRODUCTS:
            return VerificationResult.rejected(VerificationError.PRODUCT_NOT_FOUND, "Product not found", status_code=404)
        return VerificationResult.rejected(VerificationError.USER_NOT_FOUND, "User not found", status_code=404)

    def _duplicate(self) -> VerificationResult:
        return VerificationResult.rejected(
            VerificationError.DUPLICATE_TRANSACTION,
            DUPLICATE_MESSAGE,
            already_used=True,
        )
