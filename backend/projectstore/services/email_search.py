# services/email_search.py
"""
Mailbox search for wallet payment confirmations.

Subject phrasings below are search hints only. Whether an email really
confirms the claimed payment is decided later from its content.
"""
import email
import email.policy
import email.utils
import hashlib
import imaplib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from projectstore.core.config import Settings
from projectstore.models.payment_model import PaymentMethod

logger = logging.getLogger("projectstore")

SUBJECT_PATTERNS: Dict[PaymentMethod, Tuple[str, ...]] = {
    PaymentMethod.NAYAPAY: (
        "Transaction success: payment received",
        "Incoming Fund Transfer",
    ),
    PaymentMethod.JAZZCASH: (
        "JazzCash Payment Confirmation",
        "JazzCash Transaction Receipt",
        "JazzCash Payment Success",
        "Payment Received - JazzCash",
    ),
    PaymentMethod.EASYPAISA: (
        "Easypaisa Transaction Confirmation",
        "Easypaisa Payment Receipt",
        "Payment Success via Easypaisa",
        "Easypaisa: Payment Confirmation",
    ),
    PaymentMethod.JAZZCASH_TO_NAYAPAY: (
        "JazzCash to NayaPay Transfer",
        "RAAST Payment Confirmation",
        "JazzCash IBFT Transaction",
        "IBFT Transfer Confirmation",
    ),
}

_IMAP_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class EmailSearchError(Exception):
    """Mailbox could not be reached or queried."""


class RawEmail(BaseModel):
    subject: str
    body: str
    date: datetime
    message_id: Optional[str] = None


def subject_hints(method: Optional[PaymentMethod]) -> Tuple[str, ...]:
    """Subject phrasings for one method, or for every method when None."""
    if method is not None:
        return SUBJECT_PATTERNS[method]
    hints: List[str] = []
    for subjects in SUBJECT_PATTERNS.values():
        hints.extend(s for s in subjects if s not in hints)
    return tuple(hints)


class EmailSearchAdapter(ABC):
    @abstractmethod
    def search(
        self,
        method: Optional[PaymentMethod],
        days_back: int,
        claimed_txn_id: str,
        expected_amount: Optional[float] = None,
    ) -> List[RawEmail]:
        """
        Candidate confirmation emails for a claimed payment, in the order they
        should be evaluated. A blank transaction id yields an empty list.
        `method=None` widens the subject hints to every known provider.
        Raises EmailSearchError on transport failure.
        """


# ========================================
# LIVE MAILBOX (IMAP)
# ========================================
@dataclass
class EmailConfig:
    imap_server: str
    imap_port: int
    username: str
    password: str
    folder: str = "INBOX"
    timeout: float = 20.0
    max_results: int = 25


def imap_date(value: datetime) -> str:
    return f"{value.day:02d}-{_IMAP_MONTHS[value.month - 1]}-{value.year}"


def imap_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class ImapEmailSearch(EmailSearchAdapter):
    def __init__(self, config: EmailConfig):
        self.config = config

    def search(self, method, days_back, claimed_txn_id, expected_amount=None):
        claimed_txn_id = (claimed_txn_id or "").strip()
        if not claimed_txn_id:
            return []
        if not self.config.username or not self.config.password:
            raise EmailSearchError("Mailbox credentials are not configured")

        since = imap_date(datetime.now(timezone.utc) - timedelta(days=days_back))
        label = method.value if method else "any method"
        logger.info(f"Searching mailbox for {label} payment {claimed_txn_id} since {since}")

        try:
            connection = imaplib.IMAP4_SSL(
                self.config.imap_server, self.config.imap_port, timeout=self.config.timeout
            )
        except OSError as e:
            raise EmailSearchError(f"Cannot reach IMAP server {self.config.imap_server}: {e}") from e

        try:
            connection.login(self.config.username, self.config.password)
            result, _ = connection.select(imap_quote(self.config.folder), readonly=True)
            if result != "OK":
                raise EmailSearchError(f"Cannot open mailbox folder {self.config.folder}")

            # Emails quoting the id itself come first, subject-only hits after
            text_hits = self._search(connection, "SINCE", since, "TEXT", imap_quote(claimed_txn_id))
            subject_hits: List[bytes] = []
            for subject in subject_hints(method):
                for msg_num in self._search(connection, "SINCE", since, "SUBJECT", imap_quote(subject)):
                    if msg_num not in text_hits and msg_num not in subject_hits:
                        subject_hits.append(msg_num)

            emails = []
            for group in (text_hits, subject_hits):
                # Higher sequence numbers are newer
                newest = sorted(group, key=int, reverse=True)[: self.config.max_results - len(emails)]
                for msg_num in newest:
                    raw_email = self._fetch(connection, msg_num)
                    if raw_email:
                        emails.append(raw_email)

            logger.info(f"Mailbox search for {claimed_txn_id} returned {len(emails)} candidate emails")
            return emails

        except (imaplib.IMAP4.error, OSError) as e:
            raise EmailSearchError(f"Mailbox search failed: {e}") from e
        finally:
            try:
                connection.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.warning(f"Error during IMAP logout: {e}")

    def _search(self, connection: imaplib.IMAP4, *criteria: str) -> List[bytes]:
        result, data = connection.search(None, *criteria)
        if result != "OK" or not data or not data[0]:
            return []
        return data[0].split()

    def _fetch(self, connection: imaplib.IMAP4, msg_num: bytes) -> Optional[RawEmail]:
        result, msg_data = connection.fetch(msg_num.decode(), "(RFC822)")
        if result != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
            logger.debug(f"Could not fetch message {msg_num!r}")
            return None

        msg = email.message_from_bytes(msg_data[0][1], policy=email.policy.default)
        try:
            sent_at = email.utils.parsedate_to_datetime(msg.get("Date", ""))
        except (TypeError, ValueError):
            sent_at = datetime.now(timezone.utc)

        return RawEmail(
            subject=str(msg.get("Subject", "")),
            body=self._body(msg),
            date=sent_at,
            message_id=msg.get("Message-ID"),
        )

    def _body(self, msg: email.message.EmailMessage) -> str:
        part = msg.get_body(preferencelist=("plain", "html"))
        if part is None:
            return ""
        try:
            return part.get_content()
        except (LookupError, UnicodeDecodeError) as e:
            logger.debug(f"Falling back to raw payload decode: {e}")
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="ignore")


# ========================================
# SYNTHETIC MAILBOX (development only)
# ========================================
class SyntheticEmailSearch(EmailSearchAdapter):
    """
    Stand-in mailbox that always "finds" a confirmation for the claimed id
    and amount. Deterministic for a given claim. Never use in production:
    it accepts any transaction id.
    """

    def __init__(self, sender_name: str = "John Doe", receiver_name: str = "Project Store"):
        self.sender_name = sender_name
        self.receiver_name = receiver_name

    def search(self, method, days_back, claimed_txn_id, expected_amount=None):
        claimed_txn_id = (claimed_txn_id or "").strip()
        if not claimed_txn_id:
            return []

        method = method or PaymentMethod.NAYAPAY
        digest = hashlib.sha256(f"{method.value}:{claimed_txn_id}".encode()).hexdigest()
        subjects = SUBJECT_PATTERNS[method]
        subject = subjects[int(digest[:8], 16) % len(subjects)]
        amount = expected_amount if expected_amount is not None else 1000
        now = datetime.now(timezone.utc)

        if method.is_peer_transfer:
            raast_id = str(int(digest[8:16], 16) % 10**8).zfill(8)
            body = (
                "Dear Customer,\n\n"
                "Your JazzCash to NayaPay transfer has been completed successfully.\n\n"
                f"Transaction ID\n{claimed_txn_id}\n\n"
                f"Amount\nRs. {amount}\n\n"
                f"Source Acc. Title\n{self.sender_name}\n\n"
                "Source Bank\nJazzCash\n\n"
                f"Destination Acc. Title\n{self.receiver_name}\n\n"
                f"Raast ID\n{raast_id}\n\n"
                f"Transaction Time\n{now.strftime('%d %b %Y %I:%M %p')}\n\n"
                "Thank you for using JazzCash."
            )
        else:
            body = (
                "Dear User,\n\n"
                "Your payment has been successfully processed. Here are the details:\n\n"
                f"Transaction ID: #{claimed_txn_id}\n"
                f"Amount: {amount} PKR\n"
                "Currency: PKR\n"
                "Payment Status: Completed\n\n"
                f"Thank you for using {method.value}."
            )

        logger.warning(f"Synthetic mailbox generated a confirmation for {claimed_txn_id}")
        return [RawEmail(subject=subject, body=body, date=now, message_id=f"synthetic-{digest[:16]}")]


def build_email_search(settings: Settings) -> EmailSearchAdapter:
    if settings.EMAIL_SEARCH_BACKEND == "synthetic":
        if settings.ENVIRONMENT == "production":
            raise RuntimeError("Synthetic email search cannot be used in production")
        return SyntheticEmailSearch(receiver_name=settings.RECIPIENT_NAME)

    return ImapEmailSearch(
        EmailConfig(
            imap_server=settings.IMAP_SERVER,
            imap_port=settings.IMAP_PORT,
            username=settings.GMAIL_EMAIL or "",
            password=settings.GMAIL_APP_PASSWORD or "",
            folder=settings.IMAP_FOLDER,
            timeout=settings.IMAP_TIMEOUT_SECONDS,
        )
    )
