"""Tests for the pure allocation constructors (attribution_kernel/domain/allocation_builder.py)."""

from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from attribution_kernel.domain.allocation_builder import (
    absorb_residual,
    check_conservation,
    prepaid_rounds,
    tuition_round,
)
from attribution_kernel.domain.dtos import AllocationLine, EnrollmentSnapshot
from attribution_kernel.domain.values import BillingPeriod
from attribution_kernel.exceptions import AllocationConservationError

PERIOD = BillingPeriod(2024, 9)


def _snapshot(tuition: str, n: int) -> EnrollmentSnapshot:
    return EnrollmentSnapshot(
        enrollment_id=UUID(int=n),
        student_id=UUID(int=100 + n),
        family_id=UUID(int=999),
        monthly_tuition=Decimal(tuition),
    )


def _line(amount: str, n: int = 1) -> AllocationLine:
    return AllocationLine(
        enrollment_id=UUID(int=n),
        student_id=UUID(int=100 + n),
        amount=Decimal(amount),
        period=PERIOD,
    )


class TestTuitionRound:

    def test_skips_zero_tuition(self):
        lines = tuition_round((_snapshot("500.00", 1), _snapshot("0.00", 2)), PERIOD)
        assert [line.enrollment_id for line in lines] == [UUID(int=1)]

    def test_prepaid_rounds_are_period_major(self):
        lines = prepaid_rounds((_snapshot("500.00", 1), _snapshot("300.00", 2)), PERIOD, 2)
        assert [(str(line.period), line.enrollment_id.int) for line in lines] == [
            ("2024-09", 1),
            ("2024-09", 2),
            ("2024-10", 1),
            ("2024-10", 2),
        ]


class TestAbsorbResidual:

    def test_no_residual_returns_lines(self):
        lines = [_line("10.00")]
        assert absorb_residual(lines, Decimal("10.00")) == lines

    def test_largest_line_takes_difference(self):
        lines = [_line("500.00", 1), _line("300.00", 2)]
        adjusted = absorb_residual(lines, Decimal("799.25"))
        assert [line.amount for line in adjusted] == [Decimal("499.25"), Decimal("300.00")]

    def test_last_of_equal_largest_lines_takes_difference(self):
        lines = [_line("300.00", 1), _line("300.00", 2)]
        adjusted = absorb_residual(lines, Decimal("600.40"))
        assert [line.amount for line in adjusted] == [Decimal("300.00"), Decimal("300.40")]

    def test_returns_none_rather_than_a_non_positive_line(self):
        lines = [_line("0.30", 1), _line("0.30", 2)]
        assert absorb_residual(lines, Decimal("0.01")) is None


class TestConservation:

    def test_passes_on_exact_sum(self):
        check_conservation(uuid4(), [_line("10.00"), _line("5.50")], Decimal("15.50"))

    def test_raises_on_mismatch(self):
        with pytest.raises(AllocationConservationError) as exc_info:
            check_conservation(uuid4(), [_line("10.00")], Decimal("15.50"))
        assert exc_info.value.code == "ALLOCATION_NOT_CONSERVED"


class TestAllocationLine:

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError):
            _line("0.00")
