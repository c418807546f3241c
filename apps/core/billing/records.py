"""Plain rows passed between the billing services and a ``BillingStore``."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

from apps.core.schedule.services import TemplateSlot


@dataclass
class PlanRecord:
    id: object
    name: str
    billing_type: str
    price_cents: int
    duration_weeks: int | None = None
    sessions_per_week: int | None = None
    block_class_count: int | None = None
    level_id: object = None
    is_saturday_only: bool = False


@dataclass
class EnrolmentRecord:
    id: object
    family_id: object
    student_id: object
    plan: PlanRecord | None
    start_date: date
    status: str = 'ACTIVE'
    end_date: date | None = None
    paid_through_date: date | None = None
    paid_through_date_base: date | None = None
    credits_remaining: int = 0
    is_billing_primary: bool = True
    templates: tuple[TemplateSlot, ...] = ()
    version: int = 0

    @property
    def level_id(self):
        return self.plan.level_id if self.plan else None


@dataclass
class PaymentRecord:
    id: object
    family_id: object
    amount_cents: int
    paid_at: datetime
    method: str = ''
    note: str = ''
    idempotency_key: str | None = None
    status: str = 'COMPLETED'


@dataclass
class InvoiceRecord:
    id: object
    family_id: object
    amount_cents: int
    status: str
    enrolment_id: object = None
    amount_paid_cents: int = 0
    issued_at: datetime | None = None
    due_at: datetime | None = None
    paid_at: datetime | None = None
    coverage_start: date | None = None
    coverage_end: date | None = None
    credits_purchased: int | None = None
    sessions_purchased: int | None = None
    entitlements_applied_at: datetime | None = None


@dataclass
class LineItemRecord:
    id: object
    invoice_id: object
    description: str
    unit_price_cents: int
    amount_cents: int
    kind: str = 'ENROLMENT'
    quantity: int = 1
    enrolment_id: object = None
    plan_id: object = None


@dataclass
class AllocationRecord:
    id: object
    payment_id: object
    invoice_id: object
    amount_cents: int


@dataclass
class CreditEventRecord:
    id: object
    enrolment_id: object
    event_type: str
    credits_delta: int
    occurred_on: date
    note: str = ''


@dataclass
class CoverageAuditRecord:
    id: object
    enrolment_id: object
    reason: str
    previous_paid_through_date: date | None = None
    next_paid_through_date: date | None = None
    credits_remaining: int | None = None


@dataclass(frozen=True)
class WeeklyPurchase:
    """One paid weekly receipt: where its coverage began and what it bought."""

    invoice_id: object
    coverage_start: date
    sessions: int
    sessions_per_week: int | None = None


@dataclass(frozen=True)
class InvoiceTotal:
    amount_cents: int
    status: str


@dataclass
class FamilyLedgerSnapshot:
    """Everything the net-owing reconciliation reads, taken in one pass."""

    enrolments: list[EnrolmentRecord] = field(default_factory=list)
    open_invoices: list[InvoiceRecord] = field(default_factory=list)
    allocation_totals_by_invoice_id: dict = field(default_factory=dict)
    invoice_totals_by_id: dict = field(default_factory=dict)
    payments_total_cents: int = 0
