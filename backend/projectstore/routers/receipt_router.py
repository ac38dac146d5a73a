# routers/receipt_router.py → PDF RECEIPTS FOR VERIFIED PURCHASES
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
import asyncio

from projectstore.core.auth import get_current_user
from projectstore.core.config import settings
from projectstore.core.firebase import get_db
from projectstore.models.user_model import User
from projectstore.routers.payment_router import owned_transaction, get_grant_store
from projectstore.services.grant_store import PurchaseGrantStore
from projectstore.services.receipt_service import list_user_receipts, receipt_data, render_receipt_pdf

router = APIRouter(prefix="/payments", tags=["Receipts"])


@router.get("/receipts")
async def get_receipts(current_user: User = Depends(get_current_user), db=Depends(get_db)):
    receipts = await asyncio.to_thread(list_user_receipts, db, current_user.id)
    return {
        "success": True,
        "count": len(receipts),
        "receipts": [r.model_dump(mode="json", by_alias=True) for r in receipts],
    }


async def _receipt_data(txn_id: str, current_user: User, store: PurchaseGrantStore) -> dict:
    transaction = await asyncio.to_thread(owned_transaction, store, txn_id, current_user)
    product = await asyncio.to_thread(store.get_product, transaction.product_id)
    return receipt_data(transaction, product, current_user)


@router.get("/receipt-data/{txn_id}")
async def get_receipt_data(
    txn_id: str,
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    data = await _receipt_data(txn_id, current_user, store)
    return {"success": True, "receipt": data}


@router.get("/receipt/{txn_id}.pdf")
async def download_receipt(
    txn_id: str,
    current_user: User = Depends(get_current_user),
    store: PurchaseGrantStore = Depends(get_grant_store),
):
    data = await _receipt_data(txn_id, current_user, store)
    buffer = await asyncio.to_thread(render_receipt_pdf, data, settings.PROJECT_NAME)

    return StreamingResponse(
        buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="receipt_{data["receiptId"][:16]}.pdf"',
            "Cache-Control": "no-cache"
        }
    )
