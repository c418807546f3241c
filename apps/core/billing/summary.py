"""
Family billing position.

``compute_family_billing_summary`` and ``compute_family_net_owing_from_data``
are pure and work on plain inputs. ``compute_family_net_owing`` reads one
consistent snapshot from a ``BillingStore`` and delegates to them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from apps.core.enrolments.models import BillingPlan, Enrolment
from apps.core.enrolments.services import calculate_overdue_blocks, calculate_overdue_weeks
from apps.core.utils import dates

from .models import Invoice
from .stores import get_default_store


@dataclass
class EnrolmentSummaryInput:
    id: object
    student_id: object
    plan_id: object
    billing_type: str | None
    plan_price_cents: int = 0
    block_class_count: int | None = None
    sessions_per_week: int | None = None
    paid_through_date: date | None = None
    credits_remaining: int | None = None

    @classmethod
    def from_record(cls, record):
        plan = record.plan
        return cls(
            id=record.id,
            student_id=record.student_id,
            plan_id=plan.id if plan else None,
            billing_type=plan.billing_type if plan else None,
            plan_price_cents=plan.price_cents if plan else 0,
            block_class_count=plan.block_class_count if plan else None,
            sessions_per_week=plan.sessions_per_week if plan else None,
            paid_through_date=record.paid_through_date,
            credits_remaining=record.credits_remaining,
        )


@dataclass
class BreakdownEntry:
    enrolment_id: object
    student_id: object
    plan_id: object
    plan_type: str | None
    paid_through_day_key: str | None
    overdue_periods: int
    overdue_owing_cents: int


@dataclass
class FamilyBillingSummary:
    overdue_owing_cents: int = 0
    total_owing_cents: int = 0
    next_payment_due_day_key: str | None = None
    breakdown: list[BreakdownEntry] = field(default_factory=list)


@dataclass
class OpenInvoiceInput:
    id: object
    amount_cents: int
    status: str
    amount_paid_cents: int | None = 0
    enrolment_id: object = None
    coverage_end: date | None = None

    @classmethod
    def from_record(cls, record):
        return cls(
            id=record.id,
            amount_cents=record.amount_cents,
            status=record.status,
            amount_paid_cents=record.amount_paid_cents,
            enrolment_id=record.enrolment_id,
            coverage_end=record.coverage_end,
        )


@dataclass(frozen=True)
class NetOwingBreakdown:
    net_owing_cents: int
    invoice_outstanding_cents: int
    unallocated_credit_cents: int
    overdue_owing_cents: int


def enrolment_is_payable(*, status, paid_through_date=None, end_date=None) -> bool:
    if status not in Enrolment.PAYABLE_STATUSES:
        return False
    if paid_through_date is None or end_date is None:
        return True
    return dates.civil_day(paid_through_date) < dates.civil_day(end_date)


def overdue_periods_for(enrolment: EnrolmentSummaryInput, today) -> int:
    if enrolment.billing_type == BillingPlan.TYPE_PER_CLASS:
        return calculate_overdue_blocks(enrolment.credits_remaining, enrolment.block_class_count)
    return calculate_overdue_weeks(enrolment.paid_through_date, today)


def compute_family_billing_summary(enrolments, today) -> FamilyBillingSummary:
    today = dates.civil_day(today)
    today_key = dates.day_key(today)
    summary = FamilyBillingSummary()

    for enrolment in enrolments:
        if not enrolment.billing_type:
            continue

        paid_through_key = dates.day_key(enrolment.paid_through_date)
        periods = overdue_periods_for(enrolment, today)
        owing = periods * (enrolment.plan_price_cents or 0)
        summary.overdue_owing_cents += owing

        # Day keys are ISO dates, so string order is calendar order.
        due_key = paid_through_key if paid_through_key and paid_through_key >= today_key else today_key
        if summary.next_payment_due_day_key is None or due_key < summary.next_payment_due_day_key:
            summary.next_payment_due_day_key = due_key

        summary.breakdown.append(
            BreakdownEntry(
                enrolment_id=enrolment.id,
                student_id=enrolment.student_id,
                plan_id=enrolment.plan_id,
                plan_type=enrolment.billing_type,
                paid_through_day_key=paid_through_key,
                overdue_periods=periods,
                overdue_owing_cents=owing,
            )
        )

    summary.total_owing_cents = summary.overdue_owing_cents
    return summary


def _latest_open_coverage(open_invoices):
    """enrolment id -> latest open-invoice coverage end (None means open-ended)."""
    latest = {}
    for invoice in open_invoices:
        if invoice.enrolment_id is None:
            continue
        coverage_end = dates.civil_day(invoice.coverage_end)
        if invoice.enrolment_id not in latest:
            latest[invoice.enrolment_id] = coverage_end
            continue
        current = latest[invoice.enrolment_id]
        if current is None or coverage_end is None:
            latest[invoice.enrolment_id] = None
        elif coverage_end > current:
            latest[invoice.enrolment_id] = coverage_end
    return latest


def compute_family_net_owing_from_data(
    *,
    summary: FamilyBillingSummary,
    open_invoices,
    allocation_totals_by_invoice_id,
    invoice_totals_by_id,
    payments_total_cents: int,
    today=None,
) -> NetOwingBreakdown:
    today = dates.civil_day(today) if today else dates.today()
    open_invoices = [
        invoice if isinstance(invoice, OpenInvoiceInput) else OpenInvoiceInput.from_record(invoice)
        for invoice in open_invoices
    ]

    if summary.breakdown:
        coverage_by_enrolment = _latest_open_coverage(open_invoices)
        overdue_owing_cents = 0
        for entry in summary.breakdown:
            if entry.enrolment_id in coverage_by_enrolment:
                coverage_end = coverage_by_enrolment[entry.enrolment_id]
                if coverage_end is None or coverage_end >= today:
                    continue
            overdue_owing_cents += entry.overdue_owing_cents
    else:
        overdue_owing_cents = summary.total_owing_cents

    invoice_outstanding_cents = 0
    for invoice in open_invoices:
        allocated = allocation_totals_by_invoice_id.get(invoice.id, 0)
        paid = max(invoice.amount_paid_cents or 0, allocated)
        invoice_outstanding_cents += max(invoice.amount_cents - paid, 0)

    applied_cents = 0
    for invoice_id, totals in invoice_totals_by_id.items():
        if totals.status == Invoice.STATUS_VOID:
            continue
        allocated = allocation_totals_by_invoice_id.get(invoice_id, 0)
        applied_cents += min(max(allocated, 0), totals.amount_cents)

    unallocated_credit_cents = max(payments_total_cents - applied_cents, 0)
    return NetOwingBreakdown(
        net_owing_cents=overdue_owing_cents + invoice_outstanding_cents - unallocated_credit_cents,
        invoice_outstanding_cents=invoice_outstanding_cents,
        unallocated_credit_cents=unallocated_credit_cents,
        overdue_owing_cents=overdue_owing_cents,
    )


def compute_family_net_owing(family_id, *, store=None, today=None) -> NetOwingBreakdown:
    store = store or get_default_store()
    today = dates.civil_day(today) if today else dates.today()

    with store.snapshot():
        ledger = store.load_family_ledger(family_id)

    payable = [
        EnrolmentSummaryInput.from_record(record)
        for record in ledger.enrolments
        if enrolment_is_payable(
            status=record.status,
            paid_through_date=record.paid_through_date,
            end_date=record.end_date,
        )
    ]
    return compute_family_net_owing_from_data(
        summary=compute_family_billing_summary(payable, today),
        open_invoices=ledger.open_invoices,
        allocation_totals_by_invoice_id=ledger.allocation_totals_by_invoice_id,
        invoice_totals_by_id=ledger.invoice_totals_by_id,
        payments_total_cents=ledger.payments_total_cents,
        today=today,
    )
