# services/receipt_service.py → RECEIPTS FOR VERIFIED PURCHASES
import logging
from io import BytesIO
from typing import List, Optional

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from projectstore.models.payment_model import Transaction
from projectstore.models.product_model import Product
from projectstore.models.receipt_model import Receipt
from projectstore.models.user_model import User
from projectstore.services.grant_store import PurchaseGrantStore, RecordNotFoundError, TRANSACTIONS

logger = logging.getLogger("projectstore")

RECEIPTS = "receipts"
RECEIPT_PATH_PREFIX = "/api/payments/receipt/"

styles = getSampleStyleSheet()
title_style = ParagraphStyle(
    'CustomTitle',
    parent=styles['Heading1'],
    fontSize=28,
    spaceAfter=30,
    textColor=colors.HexColor("#1a1a1a"),
    alignment=1  # Center
)
subtitle_style = ParagraphStyle(
    'Subtitle',
    parent=styles['Normal'],
    fontSize=12,
    textColor=colors.grey,
    alignment=1
)


def receipt_pdf_url(transaction_id: str) -> str:
    return f"{RECEIPT_PATH_PREFIX}{transaction_id}.pdf"


def issue_receipt(db, transaction_id: str) -> Receipt:
    """
    Create the receipt record for a verified transaction and link it.
    Safe to run more than once for the same transaction.
    """
    store = PurchaseGrantStore(db)
    transaction = store.get_transaction(transaction_id)
    if not transaction:
        raise RecordNotFoundError(TRANSACTIONS, transaction_id)

    receipt = Receipt(
        _id=transaction.id,
        user_id=transaction.user_id,
        transaction_id=transaction.id,
        product_id=transaction.product_id,
        pdf_url=receipt_pdf_url(transaction.id),
    )

    ref = db.collection(RECEIPTS).document(receipt.id)
    try:
        ref.create(receipt.model_dump(by_alias=True))
        logger.info(f"✅ Receipt issued → {receipt.id} for user {receipt.user_id}")
    except AlreadyExists:
        logger.info(f"♻️ Receipt {receipt.id} already exists, relinking")
        receipt = Receipt(**{**ref.get().to_dict(), "_id": receipt.id})

    if transaction.receipt_id != receipt.id:
        store.link_receipt(transaction.id, receipt.id)
    return receipt


def list_user_receipts(db, user_id: str) -> List[Receipt]:
    query = (
        db.collection(RECEIPTS)
        .where(filter=FieldFilter("user_id", "==", user_id))
        .order_by("created_at", direction=firestore.Query.DESCENDING)
    )
    return [Receipt(**{**snap.to_dict(), "_id": snap.id}) for snap in query.stream()]


def receipt_data(transaction: Transaction, product: Optional[Product], user: Optional[User]) -> dict:
    return {
        "receiptId": transaction.receipt_id or transaction.id,
        "transactionId": transaction.txn_id,
        "date": transaction.verified_at.isoformat(),
        "customer": {
            "name": user.name if user else "",
            "email": user.email if user else "",
        },
        "product": {
            "_id": transaction.product_id,
            "title": product.title if product else "Deleted product",
        },
        "paymentMethod": transaction.method.value,
        "amount": transaction.amount,
        "currency": transaction.currency,
        "senderName": transaction.sender_name,
        "raastId": transaction.raast_id,
        "status": "PAID",
    }


def render_receipt_pdf(data: dict, store_name: str) -> BytesIO:
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, topMargin=1*inch, bottomMargin=1*inch)
    story = []

    story.append(Paragraph(store_name, title_style))
    story.append(Paragraph("Payment Receipt", subtitle_style))
    story.append(Spacer(1, 40))

    rows = [
        ["Receipt ID", data["receiptId"]],
        ["Transaction ID", data["transactionId"]],
        ["Date", data["date"][:19].replace("T", " ")],
        ["Product", data["product"]["title"]],
        ["Amount Paid", f"{data['currency']} {data['amount']:,.2f}"],
        ["Payment Method", data["paymentMethod"]],
        ["Status", data["status"]],
    ]
    if data["customer"]["name"]:
        rows.append(["Customer", data["customer"]["name"]])
    if data["customer"]["email"]:
        rows.append(["Email", data["customer"]["email"]])
    if data.get("senderName"):
        rows.append(["Sender", data["senderName"]])
    if data.get("raastId"):
        rows.append(["Raast ID", data["raastId"]])

    table = Table(rows, colWidths=[2.5*inch, 4*inch])
    table.setStyle(TableStyle([
        ('BACKGROUND', (0,0), (-1,0), colors.HexColor("#f0f0f0")),
        ('TEXTCOLOR', (0,0), (-1,-1), colors.HexColor("#1a1a1a")),
        ('ALIGN', (0,0), (-1,-1), 'LEFT'),
        ('FONTNAME', (0,0), (-1,0), 'Helvetica-Bold'),
        ('FONTSIZE', (0,0), (-1,0), 12),
        ('BOTTOMPADDING', (0,0), (-1,0), 12),
        ('GRID', (0,0), (-1,-1), 0.5, colors.grey),
        ('BOX', (0,0), (-1,-1), 1, colors.black),
    ]))
    story.append(table)
    story.append(Spacer(1, 40))

    thank_you = f"""
    <font size="14" color="#1a1a1a"><b>Thank you for your purchase!</b></font><br/><br/>
    <font size="11">
    This is an official receipt from <b>{store_name}</b>.<br/>
    Your payment was verified and your download is ready in your purchases.
    </font>
    """
    story.append(Paragraph(thank_you, styles["Normal"]))

    doc.build(story)
    buffer.seek(0)
    return buffer
