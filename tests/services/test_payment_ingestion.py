"""
PaymentIngestionService tests.

Tests cover:
- Accepted notifications: net amount, defaults, audit event
- Idempotent re-delivery on (source, external_transaction_id)
- Boundary validation of amounts, currency, source and family
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from attribution_kernel.domain.dtos import PaymentNotification
from attribution_kernel.domain.values import AttributionStatus
from attribution_kernel.exceptions import InvalidPaymentError
from attribution_kernel.models.audit_event import AuditAction
from attribution_kernel.models.payment import (
    Payment,
    PaymentMethod,
    PaymentSource,
    PaymentStatus,
)
from attribution_kernel.services.payment_ingestion_service import IngestStatus


def _notification(family, **overrides):
    fields = dict(
        school_id=family.school_id,
        family_id=family.id,
        source="stripe",
        gross_amount=Decimal("721.00"),
        fees=Decimal("21.00"),
        payment_date=date(2024, 9, 5),
        external_transaction_id="ch_3PqLm2",
        payment_method="credit-card",
    )
    fields.update(overrides)
    return PaymentNotification(**fields)


def _payment_count(session):
    return session.execute(select(func.count(Payment.id))).scalar_one()


class TestAccepted:
    def test_creates_pending_payment(self, ingestion_service, family, test_actor_id):
        result = ingestion_service.ingest(_notification(family), actor_id=test_actor_id)

        assert result.status == IngestStatus.ACCEPTED
        assert result.is_success
        assert not result.is_duplicate
        payment = result.payment
        assert payment.net_amount == Decimal("700.00")
        assert payment.gross_amount == Decimal("721.00")
        assert payment.fees == Decimal("21.00")
        assert payment.source == PaymentSource.STRIPE
        assert payment.payment_method == PaymentMethod.CREDIT_CARD
        assert payment.status == PaymentStatus.PENDING
        assert payment.attribution_status == AttributionStatus.NEEDS_REVIEW
        assert payment.allocations == []

    def test_received_date_defaults_to_today(self, ingestion_service, family):
        payment = ingestion_service.ingest(_notification(family)).payment

        assert payment.received_date == date(2024, 9, 15)

    def test_explicit_received_date_kept(self, ingestion_service, family):
        payment = ingestion_service.ingest(
            _notification(family, received_date=date(2024, 9, 7))
        ).payment

        assert payment.received_date == date(2024, 9, 7)

    def test_amounts_quantized_to_cents(self, ingestion_service, family):
        payment = ingestion_service.ingest(
            _notification(family, gross_amount=Decimal("700.005"), fees=Decimal("0"))
        ).payment

        assert payment.net_amount == Decimal("700.01")

    def test_voucher_batch_fields(self, ingestion_service, family):
        payment = ingestion_service.ingest(
            _notification(
                family,
                source="classwallet",
                fees=Decimal("0"),
                gross_amount=Decimal("1400.00"),
                payment_method="esa-voucher",
                batch_id="ESA-2024-09-B2",
                batch_transfer_date=date(2024, 9, 12),
            )
        ).payment

        assert payment.source == PaymentSource.CLASSWALLET
        assert payment.batch_id == "ESA-2024-09-B2"
        assert payment.batch_transfer_date == date(2024, 9, 12)

    def test_card_last4_stored(self, ingestion_service, family):
        payment = ingestion_service.ingest(_notification(family, last4="4242")).payment

        assert payment.last4 == "4242"
        assert payment.reconciled_to_bank is False
        assert payment.reconciled_date is None

    def test_receipt_is_audited(self, ingestion_service, auditor_service, family):
        payment = ingestion_service.ingest(_notification(family)).payment

        trace = auditor_service.get_trace("Payment", payment.id)
        assert trace.actions == (AuditAction.PAYMENT_RECEIVED,)
        assert trace.entries[0].payload["net_amount"] == "700.00"


class TestIdempotency:
    def test_redelivery_returns_existing_payment(self, ingestion_service, session, family):
        first = ingestion_service.ingest(_notification(family))
        second = ingestion_service.ingest(_notification(family))

        assert second.status == IngestStatus.DUPLICATE
        assert second.is_success
        assert second.is_duplicate
        assert second.payment.id == first.payment.id
        assert _payment_count(session) == 1

    def test_redelivery_is_audited(self, ingestion_service, auditor_service, family):
        payment = ingestion_service.ingest(_notification(family)).payment
        ingestion_service.ingest(_notification(family))

        trace = auditor_service.get_trace("Payment", payment.id)
        assert trace.last_action == AuditAction.PAYMENT_DUPLICATE_IGNORED

    def test_same_id_from_another_source_is_distinct(self, ingestion_service, session, family):
        ingestion_service.ingest(_notification(family))
        other = ingestion_service.ingest(
            _notification(family, source="ach", fees=Decimal("0"), payment_method="ach")
        )

        assert other.status == IngestStatus.ACCEPTED
        assert _payment_count(session) == 2

    def test_payments_without_external_id_are_never_merged(
        self, ingestion_service, session, family
    ):
        cash = dict(
            source="cash",
            fees=Decimal("0"),
            external_transaction_id=None,
            payment_method="cash",
        )
        ingestion_service.ingest(_notification(family, **cash))
        ingestion_service.ingest(_notification(family, **cash))

        assert _payment_count(session) == 2


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"gross_amount": Decimal("0")},
            {"gross_amount": Decimal("-50.00")},
            {"fees": Decimal("-1.00")},
            {"fees": Decimal("721.00")},
            {"source": "venmo"},
            {"payment_method": "bitcoin"},
            {"currency": "EUR"},
            {"last4": "42a"},
            {"last4": "424242"},
        ],
    )
    def test_invalid_notification_rejected(self, ingestion_service, session, family, overrides):
        with pytest.raises(InvalidPaymentError) as exc_info:
            ingestion_service.ingest(_notification(family, **overrides))

        assert exc_info.value.code == "INVALID_PAYMENT"
        assert _payment_count(session) == 0

    def test_unknown_family_rejected(self, ingestion_service, family):
        notification = _notification(family, family_id=uuid4())

        with pytest.raises(InvalidPaymentError):
            ingestion_service.ingest(notification)

    def test_family_of_another_school_rejected(self, ingestion_service, family):
        notification = _notification(family, school_id=uuid4())

        with pytest.raises(InvalidPaymentError):
            ingestion_service.ingest(notification)

    def test_rejection_is_logged(self, ingestion_service, captured_logs, family):
        with pytest.raises(InvalidPaymentError):
            ingestion_service.ingest(_notification(family, currency="GBP"))

        rejected = [r for r in captured_logs() if r["message"] == "payment_rejected_validation"]
        assert len(rejected) == 1
        assert "GBP" in rejected[0]["reason"]
