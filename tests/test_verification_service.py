import asyncio
import logging

import pytest

from conftest import PRODUCT_ID, USER_ID, OTHER_USER_ID, make_email
from fakes import StaticEmailSearch
from projectstore.models.payment_model import PaymentClaim, PaymentMethod, VerificationError
from projectstore.services.email_search import EmailSearchError, SyntheticEmailSearch
from projectstore.services.verification_service import PaymentVerificationService


def nayapay_claim(txn_id="ABCDEF1234567890ABCDEF12", user_id=USER_ID, product_id=PRODUCT_ID):
    return PaymentClaim(method=PaymentMethod.NAYAPAY, claimed_txn_id=txn_id, product_id=product_id, user_id=user_id)


def peer_claim(txn_id="RT5566778899", sender_name="John Doe", sender_amount=500.0):
    return PaymentClaim(
        method=PaymentMethod.JAZZCASH_TO_NAYAPAY,
        claimed_txn_id=txn_id,
        product_id=PRODUCT_ID,
        user_id=USER_ID,
        sender_name=sender_name,
        sender_amount=sender_amount,
    )


def build(store, mailbox, tokens=None, **kwargs):
    options = dict(search_days=7, retry_days=14, search_timeout=5.0)
    options.update(kwargs)
    if tokens:
        options["token_factory"] = tokens
    return PaymentVerificationService(email_search=mailbox, store=store, **options)


def verify(service, claim):
    return asyncio.run(service.verify(claim))


class TestScenarios:
    def test_a_verified_and_granted(self, db, store, tokens):
        mailbox = StaticEmailSearch([make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nRs. 500")])
        result = verify(build(store, mailbox, tokens), nayapay_claim())

        assert result.success
        assert result.status_code == 200
        assert result.transaction.amount == 500.0
        assert result.transaction.verified is True
        assert result.transaction.download_url == "/api/payments/download/tok0001"

        stored = db.docs("transactions")["ABCDEF1234567890ABCDEF12"]
        assert stored["verified"] is True
        assert stored["method"] == "NayaPay"
        assert stored["download_url"] == "/api/payments/download/tok0001"
        assert USER_ID in db.docs("products")[PRODUCT_ID]["buyers"]
        assert "ABCDEF1234567890ABCDEF12" in db.docs("users")[USER_ID]["purchases"]

    def test_b_second_use_is_duplicate(self, store, service):
        assert verify(service, nayapay_claim()).success

        result = verify(service, nayapay_claim())
        assert not result.success
        assert result.error_type == VerificationError.DUPLICATE_TRANSACTION
        assert result.already_used
        assert result.status_code == 400

    def test_b_replay_by_another_user_in_other_case(self, service):
        assert verify(service, nayapay_claim()).success

        result = verify(service, nayapay_claim(txn_id=" abcdef1234567890abcdef12 ", user_id=OTHER_USER_ID))
        assert result.error_type == VerificationError.DUPLICATE_TRANSACTION

    def test_c_unrelated_id(self, db, store):
        mailbox = StaticEmailSearch([make_email("Transaction ID: UNRELATED000\nAmount: Rs. 500")])
        result = verify(build(store, mailbox), nayapay_claim(txn_id="XYZ999"))

        assert result.error_type == VerificationError.TXNID_NOT_FOUND
        assert result.status_code == 400
        assert db.docs("transactions") == {}

    def test_d_partial_id_with_wrong_amount(self, db, store):
        mailbox = StaticEmailSearch([make_email("Transaction ID: ABC123456\nAmount: Rs. 495")])
        result = verify(build(store, mailbox), nayapay_claim(txn_id="REFABC123456X"))

        assert result.error_type == VerificationError.AMOUNT_MISMATCH
        assert "Expected: PKR 500.00" in result.message
        assert db.docs("transactions") == {}

    def test_e_sender_mismatch(self, db, store):
        mailbox = SyntheticEmailSearch(sender_name="Jane Doe")
        result = verify(build(store, mailbox), peer_claim(sender_name="John Doe"))

        assert result.error_type == VerificationError.SENDER_ACCOUNT_MISMATCH
        assert db.docs("transactions") == {}

    def test_f_peer_without_sender_amount_stops_before_search(self, store):
        mailbox = StaticEmailSearch([])
        result = verify(build(store, mailbox), peer_claim(sender_amount=None))

        assert not result.success
        assert result.status_code == 400
        assert mailbox.calls == []


class TestStart:
    def test_peer_without_sender_name(self, store):
        mailbox = StaticEmailSearch([])
        result = verify(build(store, mailbox), peer_claim(sender_name="  "))

        assert result.error_type == VerificationError.MISSING_SENDER_ACCOUNT
        assert mailbox.calls == []

    def test_peer_sender_amount_must_equal_price(self, store):
        mailbox = StaticEmailSearch([])
        result = verify(build(store, mailbox), peer_claim(sender_amount=450.0))

        assert result.error_type == VerificationError.AMOUNT_MISMATCH
        assert mailbox.calls == []

    def test_unknown_product(self, store, service):
        result = verify(service, nayapay_claim(product_id="missing"))
        assert result.error_type == VerificationError.PRODUCT_NOT_FOUND
        assert result.status_code == 404

    def test_peer_transfer_success_stores_identity(self, db, service):
        result = verify(service, peer_claim())

        assert result.success
        stored = db.docs("transactions")["RT5566778899"]
        assert stored["sender_name"] == "John Doe"
        assert stored["receiver_name"] == "Project Store"
        assert stored["raast_id"]
        assert stored["transaction_time"]


class TestSearch:
    def test_retry_widens_window_and_methods(self, store):
        email = make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nAmount: Rs. 500", subject="Incoming Fund Transfer")
        mailbox = StaticEmailSearch([], [email])
        result = verify(build(store, mailbox), nayapay_claim())

        assert result.success
        assert [(c[0], c[1]) for c in mailbox.calls] == [(PaymentMethod.NAYAPAY, 7), (None, 14)]
        assert mailbox.calls[0][3] == 500.0

    def test_nothing_found_after_retry(self, store):
        mailbox = StaticEmailSearch([])
        result = verify(build(store, mailbox), nayapay_claim())

        assert result.error_type == VerificationError.NO_EMAILS_FOUND
        assert len(mailbox.calls) == 2

    def test_timeout_is_retryable_server_error(self, db, store):
        mailbox = StaticEmailSearch([], delay=0.5)
        result = verify(build(store, mailbox, search_timeout=0.05), nayapay_claim())

        assert result.error_type == VerificationError.SERVER_ERROR
        assert result.status_code == 503
        assert db.docs("transactions") == {}

    def test_transport_failure(self, store):
        mailbox = StaticEmailSearch(error=EmailSearchError("connection reset"))
        result = verify(build(store, mailbox), nayapay_claim())

        assert result.error_type == VerificationError.SERVER_ERROR
        assert result.status_code == 500


class TestExtractAndMatch:
    def test_first_acceptance_wins(self, db, store):
        mailbox = StaticEmailSearch([
            make_email("Transaction ID: UNRELATED000\nAmount: Rs. 500"),
            make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nAmount: Rs. 500"),
        ])
        assert verify(build(store, mailbox), nayapay_claim()).success

    def test_id_match_failure_is_conclusive(self, store):
        mailbox = StaticEmailSearch([
            make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nAmount: Rs. 900"),
            make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nAmount: Rs. 500"),
        ])
        result = verify(build(store, mailbox), nayapay_claim())

        assert result.error_type == VerificationError.AMOUNT_MISMATCH
        assert result.details["found"] == 900.0


class TestCommit:
    def test_unknown_user(self, store, service):
        result = verify(service, nayapay_claim(user_id="ghost"))
        assert result.error_type == VerificationError.USER_NOT_FOUND
        assert result.status_code == 404

    def test_legacy_record_blocks_reuse(self, db, service):
        db.collection("transactions").document("imported-1").set({
            "transaction_id": "LEGACY12345678",
            "user_id": OTHER_USER_ID,
            "product_id": PRODUCT_ID,
            "method": "JazzCash",
            "amount": 500.0,
            "verified": True,
        })
        result = verify(service, nayapay_claim(txn_id="LEGACY12345678"))
        assert result.error_type == VerificationError.DUPLICATE_TRANSACTION

    def test_concurrent_replays_grant_once(self, db, service):
        async def race(n):
            return await asyncio.gather(*(service.verify(nayapay_claim()) for _ in range(n)))

        results = asyncio.run(race(8))

        assert sum(r.success for r in results) == 1
        rejected = [r for r in results if not r.success]
        assert len(rejected) == 7
        assert all(r.error_type == VerificationError.DUPLICATE_TRANSACTION for r in rejected)
        assert len(db.docs("transactions")) == 1
        assert db.docs("products")[PRODUCT_ID]["buyers"] == [USER_ID]

    def test_grant_is_idempotent(self, db, store, service):
        result = verify(service, nayapay_claim())
        store.grant(result.transaction)
        store.grant(result.transaction)

        assert db.docs("products")[PRODUCT_ID]["buyers"] == [USER_ID]
        assert db.docs("users")[USER_ID]["purchases"] == [result.transaction.id]

    def test_same_email_cannot_be_redeemed_under_a_variant_id(self, db, store):
        mailbox = StaticEmailSearch([make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nRs. 500")])
        service = build(store, mailbox)
        assert verify(service, nayapay_claim()).success

        result = verify(service, nayapay_claim(txn_id="ABCDEF1234567890ABCDEF12X", user_id=OTHER_USER_ID))

        assert result.error_type == VerificationError.DUPLICATE_TRANSACTION
        assert list(db.docs("transactions")) == ["ABCDEF1234567890ABCDEF12"]
        assert db.docs("products")[PRODUCT_ID]["buyers"] == [USER_ID]

    def test_variant_id_claimed_first_reserves_the_email_id(self, db, store):
        mailbox = StaticEmailSearch([make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nRs. 500")])
        service = build(store, mailbox)
        assert verify(service, nayapay_claim(txn_id="XYABCDEF1234567890ABCDEF12")).success

        result = verify(service, nayapay_claim(user_id=OTHER_USER_ID))

        assert result.error_type == VerificationError.DUPLICATE_TRANSACTION
        assert set(db.docs("payment_references")) == {"XYABCDEF1234567890ABCDEF12", "ABCDEF1234567890ABCDEF12"}

    def test_email_id_reservation_holds_without_lookups(self, db, store, monkeypatch):
        mailbox = StaticEmailSearch([make_email("Transaction ID: ABCDEF1234567890ABCDEF12\nRs. 500")])
        service = build(store, mailbox)
        assert verify(service, nayapay_claim()).success

        monkeypatch.setattr(store, "find_by_txn_id", lambda txn_id: None)
        result = verify(service, nayapay_claim(txn_id="ZZABCDEF1234567890ABCDEF12", user_id=OTHER_USER_ID))

        assert result.error_type == VerificationError.DUPLICATE_TRANSACTION
        assert list(db.docs("transactions")) == ["ABCDEF1234567890ABCDEF12"]
        assert "ZZABCDEF1234567890ABCDEF12" not in db.docs("payment_references")

    def test_buyer_retry_completes_interrupted_grant(self, db, store, service, monkeypatch):
        add_buyer = store.add_buyer
        failures = []

        def flaky_add_buyer(product_id, user_id):
            if not failures:
                failures.append(product_id)
                raise RuntimeError("deadline exceeded")
            add_buyer(product_id, user_id)

        monkeypatch.setattr(store, "add_buyer", flaky_add_buyer)

        first = verify(service, nayapay_claim())
        assert first.error_type == VerificationError.SERVER_ERROR
        assert db.docs("products")[PRODUCT_ID]["buyers"] == []

        retry = verify(service, nayapay_claim())

        assert retry.error_type == VerificationError.DUPLICATE_TRANSACTION
        assert db.docs("products")[PRODUCT_ID]["buyers"] == [USER_ID]
        assert db.docs("users")[USER_ID]["purchases"] == ["ABCDEF1234567890ABCDEF12"]
        assert db.docs("transactions")["ABCDEF1234567890ABCDEF12"]["download_url"]

    def test_replay_by_another_user_does_not_grant_them(self, db, service):
        assert verify(service, nayapay_claim()).success

        verify(service, nayapay_claim(user_id=OTHER_USER_ID))

        assert db.docs("products")[PRODUCT_ID]["buyers"] == [USER_ID]
        assert db.docs("users")[OTHER_USER_ID]["purchases"] == []

    def test_storage_fault_is_server_error(self, store, service, monkeypatch):
        def broken(transaction):
            raise RuntimeError("deadline exceeded")

        monkeypatch.setattr(store, "create_verified_transaction", broken)
        result = verify(service, nayapay_claim())

        assert result.error_type == VerificationError.SERVER_ERROR
        assert result.status_code == 500


@pytest.mark.parametrize("method", [PaymentMethod.NAYAPAY, PaymentMethod.JAZZCASH, PaymentMethod.EASYPAISA])
def test_each_standard_method_verifies_against_synthetic_mailbox(service, method):
    claim = PaymentClaim(method=method, claimed_txn_id=f"{method.value[:2].upper()}20261018001", product_id=PRODUCT_ID, user_id=USER_ID)
    assert verify(service, claim).success


def test_outcomes_are_logged_with_status_markers(store, service, caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("projectstore"), "propagate", True)

    with caplog.at_level(logging.INFO, logger="projectstore"):
        verify(service, nayapay_claim())
        verify(service, nayapay_claim())

    messages = [record.getMessage() for record in caplog.records]
    assert any(m.startswith("✅ Payment VERIFIED → ABCDEF1234567890ABCDEF12") for m in messages)
    assert any(m.startswith("♻️ Replay of ABCDEF1234567890ABCDEF12") for m in messages)
