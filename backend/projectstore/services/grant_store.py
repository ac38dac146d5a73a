# services/grant_store.py
"""
Purchase Grant Store: verified transactions and who owns what.

The `transactions` collection is keyed by transaction_key(txn_id). Every id
a transaction answers to (the claimed one and the one read from the
confirmation email) also gets a `payment_references` document. All of them
are written with create() in one batch, which Firestore rejects as a whole
when any document already exists. That rejection is the one-time-use
guarantee for payments; lookups before it are advisory only.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from google.api_core.exceptions import AlreadyExists, FailedPrecondition, NotFound
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from projectstore.models.payment_model import Transaction, transaction_key
from projectstore.models.product_model import Product
from projectstore.models.user_model import User

logger = logging.getLogger("projectstore")

TRANSACTIONS = "transactions"
PAYMENT_REFERENCES = "payment_references"
PRODUCTS = "products"
USERS = "users"

# Id fields written by the pre-Firestore importer
LEGACY_ID_FIELDS = ("transaction_id",)


class DuplicateTransactionError(Exception):
    """A verified transaction with this id already exists."""

    def __init__(self, txn_id: str):
        super().__init__(f"Transaction {txn_id} has already been used")
        self.txn_id = txn_id


class RecordNotFoundError(Exception):
    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


def _to_transaction(snap) -> Transaction:
    data = snap.to_dict() or {}
    data["_id"] = snap.id
    if not data.get("txn_id"):
        data["txn_id"] = next((data[f] for f in LEGACY_ID_FIELDS if data.get(f)), snap.id)
    return Transaction(**data)


def reference_keys(transaction: Transaction) -> List[str]:
    """Every canonical id this payment can be claimed under."""
    keys = [transaction.id]
    if transaction.email_txn_id:
        try:
            email_key = transaction_key(transaction.email_txn_id)
        except ValueError:
            logger.warning(f"Email id {transaction.email_txn_id!r} of {transaction.id} cannot be reserved")
        else:
            if email_key not in keys:
                keys.append(email_key)
    return keys


class PurchaseGrantStore:
    def __init__(self, db):
        self.db = db

    # ---------------- Collaborator lookups ----------------
    def get_product(self, product_id: str) -> Optional[Product]:
        doc = self.db.collection(PRODUCTS).document(product_id).get()
        if not doc.exists:
            return None
        return Product(**{**doc.to_dict(), "_id": doc.id})

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self.db.collection(USERS).document(user_id).get()
        if not doc.exists:
            return None
        return User(**{**doc.to_dict(), "_id": doc.id})

    # ---------------- Transactions ----------------
    def find_by_txn_id(self, txn_id: str) -> Optional[Transaction]:
        try:
            key = transaction_key(txn_id)
        except ValueError:
            return None

        snap = self.db.collection(TRANSACTIONS).document(key).get()
        if snap.exists:
            return _to_transaction(snap)

        reference = self.db.collection(PAYMENT_REFERENCES).document(key).get()
        if reference.exists:
            transaction = self.get_transaction(reference.to_dict()["transaction_id"])
            if transaction:
                logger.info(f"Transaction {txn_id} is a reference of {transaction.id}")
                return transaction

        for field in LEGACY_ID_FIELDS:
            query = self.db.collection(TRANSACTIONS).where(filter=FieldFilter(field, "==", txn_id.strip())).limit(1)
            for legacy in query.stream():
                logger.info(f"Transaction {txn_id} found via legacy field '{field}'")
                return _to_transaction(legacy)
        return None

    def get_transaction(self, doc_id: str) -> Optional[Transaction]:
        snap = self.db.collection(TRANSACTIONS).document(doc_id).get()
        return _to_transaction(snap) if snap.exists else None

    def create_verified_transaction(self, transaction: Transaction) -> Transaction:
        """Raises DuplicateTransactionError if the id was already used, by anyone, for anything."""
        data = transaction.model_dump(by_alias=True)
        data["method"] = transaction.method.value
        data["verified"] = True

        batch = self.db.batch()
        batch.create(self.db.collection(TRANSACTIONS).document(transaction.id), data)
        for key in reference_keys(transaction):
            batch.create(self.db.collection(PAYMENT_REFERENCES).document(key), {
                "transaction_id": transaction.id,
                "user_id": transaction.user_id,
                "created_at": transaction.created_at,
            })
        try:
            batch.commit()
        except AlreadyExists as e:
            raise DuplicateTransactionError(transaction.txn_id) from e

        logger.info(f"✅ Verified transaction stored → {transaction.id} | PKR {transaction.amount:,.2f}")
        return transaction

    def list_user_transactions(self, user_id: str) -> List[Transaction]:
        query = (
            self.db.collection(TRANSACTIONS)
            .where(filter=FieldFilter("user_id", "==", user_id))
            .order_by("verified_at", direction=firestore.Query.DESCENDING)
        )
        return [_to_transaction(snap) for snap in query.stream()]

    def find_by_download_url(self, download_url: str) -> Optional[Transaction]:
        query = (
            self.db.collection(TRANSACTIONS)
            .where(filter=FieldFilter("download_url", "==", download_url))
            .where(filter=FieldFilter("verified", "==", True))
            .limit(1)
        )
        for snap in query.stream():
            return _to_transaction(snap)
        return None

    def ensure_download_url(self, transaction: Transaction, token_factory: Callable[[], str], prefix: str) -> Transaction:
        """Backfill download_url once. An existing URL is never replaced."""
        if transaction.download_url:
            return transaction

        ref = self.db.collection(TRANSACTIONS).document(transaction.id)
        while True:
            snap = ref.get()
            current = (snap.to_dict() or {}).get("download_url")
            if current:
                return transaction.model_copy(update={"download_url": current})

            download_url = f"{prefix}{token_factory()}"
            try:
                # Only if nobody wrote the document since it was read
                ref.update(
                    {"download_url": download_url, "updated_at": datetime.now(timezone.utc)},
                    option=self.db.write_option(last_update_time=snap.update_time),
                )
            except FailedPrecondition:
                logger.info(f"Transaction {transaction.id} changed while assigning its download URL, re-reading")
                continue
            return transaction.model_copy(update={"download_url": download_url})

    def link_receipt(self, transaction_id: str, receipt_id: str):
        self.db.collection(TRANSACTIONS).document(transaction_id).update({"receipt_id": receipt_id})

    # ---------------- Grants (idempotent) ----------------
    def add_buyer(self, product_id: str, user_id: str):
        try:
            self.db.collection(PRODUCTS).document(product_id).update({
                "buyers": firestore.ArrayUnion([user_id])
            })
        except NotFound as e:
            raise RecordNotFoundError(PRODUCTS, product_id) from e

    def add_purchase(self, user_id: str, transaction_id: str):
        try:
            self.db.collection(USERS).document(user_id).update({
                "purchases": firestore.ArrayUnion([transaction_id])
            })
        except NotFound as e:
            raise RecordNotFoundError(USERS, user_id) from e

    def grant(self, transaction: Transaction):
        """Safe to re-run after a crash between commit and grant."""
        self.add_buyer(transaction.product_id, transaction.user_id)
        self.add_purchase(transaction.user_id, transaction.id)
