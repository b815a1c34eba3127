"""
Allocation Builder -- turns a matched strategy into concrete allocation lines.

Responsibility:
    Pure constructors for the (enrollment, amount, billing period) lines a
    strategy proposes: a full tuition round for one period, consecutive
    rounds for a prepayment, and a cent-exact proportional split.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Conservation: every builder that receives a target amount returns
      lines summing to exactly that amount (to the cent).  A sub-epsilon
      difference between tuition and the amount paid is absorbed by the
      largest line.
    - Determinism: identical inputs produce identical lines in identical
      order; proportional remainder cents go to the largest fractional
      shares, ties broken by enrollment order.

Failure modes:
    - AllocationConservationError from check_conservation() when a line
      set does not sum to the payment's net amount.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from attribution_kernel.domain.dtos import AllocationLine, EnrollmentSnapshot
from attribution_kernel.domain.values import CENT, ZERO, BillingPeriod, to_cents
from attribution_kernel.exceptions import AllocationConservationError


def tuition_round(
    enrollments: tuple[EnrollmentSnapshot, ...],
    period: BillingPeriod,
) -> list[AllocationLine]:
    """One line per enrollment carrying its full tuition for ``period``."""
    return [
        AllocationLine(
            enrollment_id=e.enrollment_id,
            student_id=e.student_id,
            amount=to_cents(e.monthly_tuition),
            period=period,
        )
        for e in enrollments
        if e.monthly_tuition > 0
    ]


def prepaid_rounds(
    enrollments: tuple[EnrollmentSnapshot, ...],
    anchor: BillingPeriod,
    periods: int,
) -> list[AllocationLine]:
    """
    ``periods`` consecutive tuition rounds starting at ``anchor``.

    Lines are ordered period-major: every enrollment for the anchor
    month, then every enrollment for the following month, and so on.
    """
    lines: list[AllocationLine] = []
    for offset in range(periods):
        lines.extend(tuition_round(enrollments, anchor.advance(offset)))
    return lines


def absorb_residual(
    lines: list[AllocationLine], target: Decimal
) -> list[AllocationLine] | None:
    """
    Make ``lines`` sum to ``target`` by adjusting the largest line.

    Used only for differences below the matching tolerance.  The last
    line with the largest amount takes the difference.  Returns None when
    that would leave the line at zero or below.
    """
    if not lines:
        return lines
    residual = to_cents(target) - sum((line.amount for line in lines), ZERO)
    if residual == 0:
        return lines
    largest = max(range(len(lines)), key=lambda i: (lines[i].amount, i))
    if lines[largest].amount + residual <= 0:
        return None
    adjusted = list(lines)
    adjusted[largest] = replace(lines[largest], amount=lines[largest].amount + residual)
    return adjusted


def proportional_split(
    net_amount: Decimal,
    enrollments: tuple[EnrollmentSnapshot, ...],
    period: BillingPeriod,
    note: str | None = None,
) -> list[AllocationLine]:
    """
    Split ``net_amount`` across enrollments by share of total tuition.

    Largest-remainder distribution in whole cents: each enrollment gets the
    floor of its exact share, and the leftover cents go one each to the
    largest fractional remainders.  Enrollments whose share rounds to zero
    are omitted.  When no enrollment carries tuition the amount is split
    evenly.
    """
    total_cents = int(to_cents(net_amount) / CENT)
    weights = [max(e.monthly_tuition, ZERO) for e in enrollments]
    weight_total = sum(weights, ZERO)
    if weight_total == 0:
        weights = [Decimal(1)] * len(enrollments)
        weight_total = Decimal(len(enrollments))

    exact = [Decimal(total_cents) * w / weight_total for w in weights]
    floors = [int(x.to_integral_value(rounding=ROUND_FLOOR)) for x in exact]
    leftover = total_cents - sum(floors)

    by_remainder = sorted(
        range(len(enrollments)),
        key=lambda i: (-(exact[i] - floors[i]), i),
    )
    for i in by_remainder[:leftover]:
        floors[i] += 1

    return [
        AllocationLine(
            enrollment_id=e.enrollment_id,
            student_id=e.student_id,
            amount=Decimal(cents) * CENT,
            period=period,
            note=note,
            confirmed=False,
        )
        for e, cents in zip(enrollments, floors)
        if cents > 0
    ]


def check_conservation(
    payment_id: UUID,
    lines: tuple[AllocationLine, ...] | list[AllocationLine],
    net_amount: Decimal,
) -> None:
    """Raise AllocationConservationError unless lines sum to net_amount."""
    allocated = sum((line.amount for line in lines), ZERO)
    if to_cents(allocated) != to_cents(net_amount):
        raise AllocationConservationError(
            payment_id=str(payment_id),
            net_amount=str(net_amount),
            allocated=str(allocated),
        )
