# routers/payment_router.py → WALLET PAYMENT VERIFICATION + PURCHASES
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from functools import lru_cache
import asyncio
import logging

from projectstore.core.auth import get_current_user
from projectstore.core.config import settings
from projectstore.core.firebase import get_db
from projectstore.models.payment_model import (
    InitializePaymentRequest,
    PaymentClaim,
    PaymentMethod,
    Transaction,
    VerifyPaymentRequest,
    transaction_key,
)
from projectstore.models.user_model import User
from projectstore.services.email_search import EmailSearchAdapter, build_email_search
from projectstore.services.grant_store import PurchaseGrantStore
from projectstore.services.verification_service import PaymentVerificationService
from projectstore.tasks.receipt_celery import issue_receipt_task
from projectstore.utils.tokens import generate_secure_token

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger("projectstore")

METHOD_ENABLED = {
    PaymentMethod.NAYAPAY: "NAYAPAY_ENABLED",
    PaymentMethod.JAZZCASH: "JAZZCASH_ENABLED",
    PaymentMethod.EASYPAISA: "EASYPAISA_ENABLED",
    PaymentMethod.JAZZCASH_TO_NAYAPAY: "JAZZCASH_TO_NAYAPAY_ENABLED",
}


# ========================================
# DEPENDENCIES
# ========================================
def get_grant_store(db=Depends(get_db)) -> PurchaseGrantStore:
    return PurchaseGrantStore(db)


@lru_cache(maxsize=1)
def get_email_search() -> EmailSearchAdapter:
    return build_email_search(settings)


def get_verification_service(
    email_search: EmailSearchAdapter = Depends(get_email_search),
    store: PurchaseGrantStore = Depends(get_grant_store),
) -> PaymentVerificationService:
    return PaymentVerificationService(
        email_search=email_search,
        store=store,
        token_factory=generate_secure_token,
        search_days=settings.EMAIL_SEARCH_DAYS,
        retry_days=settings.EMAIL_SEARCH_RETRY_DAYS,
        search_timeout=settings.EMAIL_SEARCH_TIMEOUT_SECONDS,
        download_prefix=settings.DOWNLOAD_PATH_PREFIX,
    )


def queue_receipt(transaction_id: str):
    try:
        issue_receipt_task.delay(transaction_id)
        logger.info(f"✅ Receipt queued for {transaction_id}")
    except Exception as e:
        logger.error(f"❌ Could not queue receipt for {transaction_id}: {e}", exc_info=True)


def owned_transaction(store: PurchaseGrantStore, txn_id: str, user: User) -> Transaction:
    try:
        key = transaction_key(txn_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Transaction not found")

    transaction = store.get_transaction(key)
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    if transaction.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not authorized to access this transaction")
    return transaction


# ========================================
# CHECKOUT
# ========================================
@router.post("/initialize")
async def initialize_payment(
    payload: InitializePaymentRequest,
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    product = await asyncio.to_thread(store.get_product, payload.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    if not getattr(settings, METHOD_ENABLED[payload.payment_method]):
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": "The selected payment method is not available"},
        )

    payment_info = {
        "productId": product.id,
        "productTitle": product.title,
        "amount": product.price,
        "method": payload.payment_method.value,
        "recipientName": settings.RECIPIENT_NAME,
        "recipientNumber": settings.RECIPIENT_NUMBER,
    }
    if payload.payment_method.is_peer_transfer and settings.RAAST_ID:
        payment_info["raastId"] = settings.RAAST_ID

    return {"success": True, "paymentInfo": payment_info}


@router.post("/verify")
async def verify_payment(
    payload: VerifyPaymentRequest,
    current_user: User = Depends(get_current_user),
    service: PaymentVerificationService = Depends(get_verification_service),
):
    claim = PaymentClaim.from_request(payload, user_id=current_user.id)
    result = await service.verify(claim)

    if result.success:
        queue_receipt(result.transaction.id)

    return JSONResponse(status_code=result.status_code, content=result.to_response())


# ========================================
# TRANSACTIONS
# ========================================
@router.get("/transaction/{txn_id}")
async def get_transaction(
    txn_id: str,
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    transaction = await asyncio.to_thread(owned_transaction, store, txn_id, current_user)
    product = await asyncio.to_thread(store.get_product, transaction.product_id)
    user = await asyncio.to_thread(store.get_user, transaction.user_id)

    data = transaction.model_dump(mode="json", by_alias=True)
    data["user"] = {"_id": transaction.user_id, "name": user.name, "email": user.email} if user else None
    data["product"] = product.summary() if product else None
    return {"success": True, "transaction": data}


@router.get("/user-transactions")
async def get_user_transactions(
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    transactions = await asyncio.to_thread(store.list_user_transactions, current_user.id)

    results = []
    for transaction in transactions:
        product = await asyncio.to_thread(store.get_product, transaction.product_id)
        data = transaction.model_dump(mode="json", by_alias=True)
        data["product"] = product.summary() if product else None
        results.append(data)

    return {"success": True, "count": len(results), "transactions": results}


# ========================================
# PURCHASES & DOWNLOADS
# ========================================
@router.get("/purchases")
async def get_purchases(
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    transactions = await asyncio.to_thread(store.list_user_transactions, current_user.id)

    purchases = []
    for transaction in transactions:
        if not transaction.download_url:
            logger.warning(f"Purchase {transaction.id} had no download URL, assigning one")
            transaction = await asyncio.to_thread(
                store.ensure_download_url, transaction, generate_secure_token, settings.DOWNLOAD_PATH_PREFIX
            )
        product = await asyncio.to_thread(store.get_product, transaction.product_id)
        data = transaction.model_dump(mode="json", by_alias=True)
        data["product"] = {
            **product.summary(),
            "short_description": product.short_description,
        } if product else None
        purchases.append(data)

    return {"success": True, "count": len(purchases), "purchases": purchases}


@router.get("/download/{secure_token}")
async def download_product(
    secure_token: str,
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    transaction = await asyncio.to_thread(
        store.find_by_download_url, f"{settings.DOWNLOAD_PATH_PREFIX}{secure_token}"
    )
    if not transaction:
        raise HTTPException(status_code=404, detail="Invalid download link")

    if transaction.user_id != current_user.id:
        logger.warning(f"User {current_user.id} tried to use download link of {transaction.id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to download this product")

    product = await asyncio.to_thread(store.get_product, transaction.product_id)
    if not product or not product.download_link:
        raise HTTPException(
            status_code=404,
            detail="Product download link is not available. Please contact support.",
        )

    return {"success": True, "downloadUrl": product.download_link, "productTitle": product.title}
