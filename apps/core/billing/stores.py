"""
Persistence surface used by the payment and reconciliation services.

``DjangoBillingStore`` is the production store backed by the ORM.
``InMemoryBillingStore`` keeps every table in a dict keyed by generated ids
and honours the same transactional contract, so the services can be
exercised without a database.
"""
from __future__ import annotations

import copy
import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace

from django.db import IntegrityError, transaction
from django.db.models import F, Q, Sum
from django.utils import timezone

from apps.core.enrolments.models import (
    BillingPlan,
    Enrolment,
    EnrolmentClassAssignment,
    EnrolmentCoverageAudit,
    EnrolmentCreditEvent,
)
from apps.core.families.models import Student
from apps.core.schedule.models import ClassCancellation, Holiday
from apps.core.schedule.services import Cancellation, HolidayRange, TemplateSlot

from .exceptions import ConcurrencyConflict
from .models import Invoice, InvoiceLineItem, Payment, PaymentAllocation
from .records import (
    AllocationRecord,
    CoverageAuditRecord,
    CreditEventRecord,
    EnrolmentRecord,
    FamilyLedgerSnapshot,
    InvoiceRecord,
    InvoiceTotal,
    LineItemRecord,
    PaymentRecord,
    PlanRecord,
    WeeklyPurchase,
)


ENROLMENT_STATE_FIELDS = frozenset({'paid_through_date', 'paid_through_date_base', 'credits_remaining'})
OPEN_INVOICE_STATUSES = Invoice.OPEN_STATUSES


class BillingStore(ABC):
    @abstractmethod
    def atomic(self):
        """Context manager: everything inside commits together or not at all."""

    def snapshot(self):
        """Context manager for a consistent multi-table read."""
        return self.atomic()

    @abstractmethod
    def find_payment_by_idempotency_key(self, family_id, idempotency_key) -> PaymentRecord | None: ...

    @abstractmethod
    def first_allocation_invoice_id(self, payment_id): ...

    @abstractmethod
    def create_payment(self, *, family_id, amount_cents, paid_at, method='', note='', idempotency_key=None) -> PaymentRecord: ...

    @abstractmethod
    def lock_enrolment(self, enrolment_id) -> EnrolmentRecord | None: ...

    @abstractmethod
    def get_plan(self, plan_id) -> PlanRecord | None: ...

    @abstractmethod
    def save_enrolment_state(self, enrolment_id, *, expected_version, **changes) -> int: ...

    @abstractmethod
    def list_holidays(self, *, template_ids, level_ids, start_date=None) -> list[HolidayRange]: ...

    @abstractmethod
    def list_cancellations(self, *, template_ids, start_date=None) -> list[Cancellation]: ...

    @abstractmethod
    def add_credit_event(self, *, enrolment_id, event_type, credits_delta, occurred_on, note='') -> CreditEventRecord: ...

    @abstractmethod
    def sum_credit_events(self, enrolment_id) -> int: ...

    @abstractmethod
    def list_weekly_purchases(self, enrolment_id) -> list[WeeklyPurchase]:
        """Non-void weekly receipts for the enrolment, oldest coverage first."""

    @abstractmethod
    def add_coverage_audit(self, *, enrolment_id, reason, previous_paid_through_date, next_paid_through_date, credits_remaining=None) -> CoverageAuditRecord: ...

    @abstractmethod
    def create_invoice(self, **fields) -> InvoiceRecord: ...

    @abstractmethod
    def create_line_item(self, **fields) -> LineItemRecord: ...

    @abstractmethod
    def create_allocation(self, *, payment_id, invoice_id, amount_cents) -> AllocationRecord: ...

    @abstractmethod
    def load_family_ledger(self, family_id) -> FamilyLedgerSnapshot: ...


def _check_state_fields(changes):
    unknown = set(changes) - ENROLMENT_STATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported enrolment fields: {', '.join(sorted(unknown))}")


# ---------------------------------------------------------------------------
# Django ORM
# ---------------------------------------------------------------------------

def _template_slot(template) -> TemplateSlot:
    return TemplateSlot(
        template_id=template.id,
        day_of_week=template.day_of_week,
        start_date=template.start_date,
        end_date=template.end_date,
        level_id=template.level_id,
        name=template.name,
    )


def _plan_record(plan: BillingPlan | None) -> PlanRecord | None:
    if plan is None:
        return None
    return PlanRecord(
        id=plan.id,
        name=plan.name,
        billing_type=plan.billing_type,
        price_cents=plan.price_cents,
        duration_weeks=plan.duration_weeks,
        sessions_per_week=plan.sessions_per_week,
        block_class_count=plan.block_class_count,
        level_id=plan.level_id,
        is_saturday_only=plan.is_saturday_only,
    )


def _payment_record(payment: Payment) -> PaymentRecord:
    return PaymentRecord(
        id=payment.id,
        family_id=payment.family_id,
        amount_cents=payment.amount_cents,
        paid_at=payment.paid_at,
        method=payment.method,
        note=payment.note,
        idempotency_key=payment.idempotency_key,
        status=payment.status,
    )


def _invoice_record(invoice: Invoice) -> InvoiceRecord:
    return InvoiceRecord(
        id=invoice.id,
        family_id=invoice.family_id,
        enrolment_id=invoice.enrolment_id,
        amount_cents=invoice.amount_cents,
        amount_paid_cents=invoice.amount_paid_cents,
        status=invoice.status,
        issued_at=invoice.issued_at,
        due_at=invoice.due_at,
        paid_at=invoice.paid_at,
        coverage_start=invoice.coverage_start,
        coverage_end=invoice.coverage_end,
        credits_purchased=invoice.credits_purchased,
        sessions_purchased=invoice.sessions_purchased,
        entitlements_applied_at=invoice.entitlements_applied_at,
    )


class DjangoBillingStore(BillingStore):
    def __init__(self, using=None):
        self.using = using

    def atomic(self):
        return transaction.atomic(using=self.using)

    def _manager(self, model):
        return model.objects.db_manager(self.using) if self.using else model.objects

    def find_payment_by_idempotency_key(self, family_id, idempotency_key):
        payment = self._manager(Payment).filter(family_id=family_id, idempotency_key=idempotency_key).first()
        return _payment_record(payment) if payment else None

    def first_allocation_invoice_id(self, payment_id):
        return (
            self._manager(PaymentAllocation)
            .filter(payment_id=payment_id)
            .order_by('id')
            .values_list('invoice_id', flat=True)
            .first()
        )

    def create_payment(self, *, family_id, amount_cents, paid_at, method='', note='', idempotency_key=None):
        try:
            with transaction.atomic(using=self.using):
                payment = self._manager(Payment).create(
                    family_id=family_id,
                    amount_cents=amount_cents,
                    paid_at=paid_at,
                    method=(method or '')[:40],
                    note=(note or '')[:255],
                    idempotency_key=idempotency_key,
                )
        except IntegrityError as exc:
            raise ConcurrencyConflict('A payment with this idempotency key was recorded concurrently.') from exc
        return _payment_record(payment)

    def lock_enrolment(self, enrolment_id):
        enrolment = self._manager(Enrolment).select_for_update().filter(pk=enrolment_id).first()
        if enrolment is None:
            return None

        family_id = self._manager(Student).filter(pk=enrolment.student_id).values_list('family_id', flat=True).first()
        plan = self._manager(BillingPlan).filter(pk=enrolment.plan_id).first() if enrolment.plan_id else None

        assignments = (
            self._manager(EnrolmentClassAssignment)
            .filter(enrolment_id=enrolment.id)
            .select_related('template')
        )
        templates = [assignment.template for assignment in assignments]
        if not templates and enrolment.template_id:
            templates = [enrolment.template]

        unique = {template.id: template for template in templates}
        return EnrolmentRecord(
            id=enrolment.id,
            family_id=family_id,
            student_id=enrolment.student_id,
            plan=_plan_record(plan),
            status=enrolment.status,
            start_date=enrolment.start_date,
            end_date=enrolment.end_date,
            paid_through_date=enrolment.paid_through_date,
            paid_through_date_base=enrolment.paid_through_date_base,
            credits_remaining=enrolment.credits_remaining,
            is_billing_primary=enrolment.is_billing_primary,
            templates=tuple(_template_slot(template) for template in unique.values()),
            version=enrolment.version,
        )

    def get_plan(self, plan_id):
        return _plan_record(self._manager(BillingPlan).filter(pk=plan_id).first())

    def save_enrolment_state(self, enrolment_id, *, expected_version, **changes):
        _check_state_fields(changes)
        updated = self._manager(Enrolment).filter(pk=enrolment_id, version=expected_version).update(
            version=F('version') + 1,
            updated_at=timezone.now(),
            **changes,
        )
        if not updated:
            raise ConcurrencyConflict(f'Enrolment {enrolment_id} was changed by another transaction.')
        return expected_version + 1

    def list_holidays(self, *, template_ids, level_ids, start_date=None):
        scope = Q(template__isnull=True, level__isnull=True) | Q(template_id__in=list(template_ids))
        level_ids = [level_id for level_id in level_ids if level_id is not None]
        if level_ids:
            scope |= Q(template__isnull=True, level_id__in=level_ids)
        holidays = self._manager(Holiday).filter(scope)
        if start_date:
            holidays = holidays.filter(end_date__gte=start_date)
        return [
            HolidayRange(
                start_date=holiday.start_date,
                end_date=holiday.end_date,
                template_id=holiday.template_id,
                level_id=holiday.level_id,
            )
            for holiday in holidays
        ]

    def list_cancellations(self, *, template_ids, start_date=None):
        cancellations = self._manager(ClassCancellation).filter(template_id__in=list(template_ids))
        if start_date:
            cancellations = cancellations.filter(date__gte=start_date)
        return [Cancellation(template_id=item.template_id, date=item.date) for item in cancellations]

    def add_credit_event(self, *, enrolment_id, event_type, credits_delta, occurred_on, note=''):
        event = self._manager(EnrolmentCreditEvent).create(
            enrolment_id=enrolment_id,
            event_type=event_type,
            credits_delta=credits_delta,
            occurred_on=occurred_on,
            note=(note or '')[:255],
        )
        return CreditEventRecord(
            id=event.id,
            enrolment_id=enrolment_id,
            event_type=event_type,
            credits_delta=credits_delta,
            occurred_on=occurred_on,
            note=event.note,
        )

    def sum_credit_events(self, enrolment_id):
        total = self._manager(EnrolmentCreditEvent).filter(enrolment_id=enrolment_id).aggregate(
            total=Sum('credits_delta')
        )['total']
        return total or 0

    def list_weekly_purchases(self, enrolment_id):
        receipts = (
            self._manager(Invoice)
            .filter(
                enrolment_id=enrolment_id,
                sessions_purchased__isnull=False,
                coverage_start__isnull=False,
            )
            .exclude(status=Invoice.STATUS_VOID)
            .prefetch_related('line_items__plan')
            .order_by('coverage_start', 'id')
        )
        purchases = []
        for receipt in receipts:
            plan = next((item.plan for item in receipt.line_items.all() if item.plan_id), None)
            purchases.append(
                WeeklyPurchase(
                    invoice_id=receipt.id,
                    coverage_start=receipt.coverage_start,
                    sessions=receipt.sessions_purchased,
                    sessions_per_week=plan.sessions_per_week if plan else None,
                )
            )
        return purchases

    def add_coverage_audit(self, *, enrolment_id, reason, previous_paid_through_date, next_paid_through_date, credits_remaining=None):
        audit = self._manager(EnrolmentCoverageAudit).create(
            enrolment_id=enrolment_id,
            reason=reason,
            previous_paid_through_date=previous_paid_through_date,
            next_paid_through_date=next_paid_through_date,
            credits_remaining=credits_remaining,
        )
        return CoverageAuditRecord(
            id=audit.id,
            enrolment_id=enrolment_id,
            reason=reason,
            previous_paid_through_date=previous_paid_through_date,
            next_paid_through_date=next_paid_through_date,
            credits_remaining=credits_remaining,
        )

    def create_invoice(self, **fields):
        invoice = Invoice(**fields)
        invoice.full_clean()
        invoice.save(using=self.using)
        return _invoice_record(invoice)

    def create_line_item(self, **fields):
        item = self._manager(InvoiceLineItem).create(**fields)
        return LineItemRecord(
            id=item.id,
            invoice_id=item.invoice_id,
            kind=item.kind,
            description=item.description,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            amount_cents=item.amount_cents,
            enrolment_id=item.enrolment_id,
            plan_id=item.plan_id,
        )

    def create_allocation(self, *, payment_id, invoice_id, amount_cents):
        allocation = PaymentAllocation(payment_id=payment_id, invoice_id=invoice_id, amount_cents=amount_cents)
        allocation.save(using=self.using)
        return AllocationRecord(
            id=allocation.id,
            payment_id=payment_id,
            invoice_id=invoice_id,
            amount_cents=amount_cents,
        )

    def load_family_ledger(self, family_id):
        enrolments = (
            self._manager(Enrolment)
            .for_family(family_id)
            .filter(is_billing_primary=True)
            .select_related('plan', 'student')
        )
        enrolment_records = [
            EnrolmentRecord(
                id=enrolment.id,
                family_id=enrolment.student.family_id,
                student_id=enrolment.student_id,
                plan=_plan_record(enrolment.plan),
                status=enrolment.status,
                start_date=enrolment.start_date,
                end_date=enrolment.end_date,
                paid_through_date=enrolment.paid_through_date,
                paid_through_date_base=enrolment.paid_through_date_base,
                credits_remaining=enrolment.credits_remaining,
                is_billing_primary=enrolment.is_billing_primary,
                version=enrolment.version,
            )
            for enrolment in enrolments
        ]

        open_invoices = [
            _invoice_record(invoice)
            for invoice in self._manager(Invoice).for_family(family_id).filter(status__in=OPEN_INVOICE_STATUSES)
        ]

        payments_total = self._manager(Payment).for_family(family_id).exclude(
            status=Payment.STATUS_VOID,
        ).aggregate(total=Sum('amount_cents'))['total'] or 0

        allocation_rows = (
            self._manager(PaymentAllocation)
            .filter(invoice__family_id=family_id)
            .exclude(invoice__status=Invoice.STATUS_VOID)
            .exclude(payment__status=Payment.STATUS_VOID)
            .values('invoice_id')
            .annotate(total=Sum('amount_cents'))
        )
        allocation_totals = {row['invoice_id']: row['total'] or 0 for row in allocation_rows}

        invoice_totals = {
            row['id']: InvoiceTotal(amount_cents=row['amount_cents'], status=row['status'])
            for row in self._manager(Invoice).filter(pk__in=list(allocation_totals)).values('id', 'amount_cents', 'status')
        }

        return FamilyLedgerSnapshot(
            enrolments=enrolment_records,
            open_invoices=open_invoices,
            allocation_totals_by_invoice_id=allocation_totals,
            invoice_totals_by_id=invoice_totals,
            payments_total_cents=payments_total,
        )


# ---------------------------------------------------------------------------
# In-memory arena
# ---------------------------------------------------------------------------

class InMemoryBillingStore(BillingStore):
    TABLES = (
        'families',
        'students',
        'plans',
        'templates',
        'enrolments',
        'assignments',
        'holidays',
        'cancellations',
        'credit_events',
        'coverage_audits',
        'invoices',
        'line_items',
        'payments',
        'allocations',
    )

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.tables = {name: {} for name in self.TABLES}

    def _next_id(self):
        return next(self._ids)

    def _insert(self, table, record):
        self.tables[table][record.id] = record
        return replace(record)

    @contextmanager
    def atomic(self):
        # Every level keeps its own backup, like a savepoint.
        with self._lock:
            backup = copy.deepcopy(self.tables)
            try:
                yield self
            except BaseException:
                self.tables = backup
                raise

    # -- seeding ---------------------------------------------------------

    def add_family(self, name='Family'):
        family_id = self._next_id()
        self.tables['families'][family_id] = {'id': family_id, 'name': name}
        return family_id

    def add_student(self, family_id, first_name='Student'):
        student_id = self._next_id()
        self.tables['students'][student_id] = {'id': student_id, 'family_id': family_id, 'first_name': first_name}
        return student_id

    def add_plan(self, **fields):
        fields.setdefault('name', 'Plan')
        return self._insert('plans', PlanRecord(id=self._next_id(), **fields))

    def add_template(self, day_of_week, **fields):
        slot = TemplateSlot(template_id=self._next_id(), day_of_week=day_of_week, **fields)
        self.tables['templates'][slot.template_id] = slot
        return slot

    def add_enrolment(self, *, student_id, plan_id, start_date, template_ids=(), **fields):
        record = EnrolmentRecord(
            id=self._next_id(),
            family_id=self.tables['students'][student_id]['family_id'],
            student_id=student_id,
            plan=self.tables['plans'].get(plan_id),
            start_date=start_date,
            **fields,
        )
        self.tables['enrolments'][record.id] = record
        self.tables['assignments'][record.id] = list(template_ids)
        return self.get_enrolment(record.id)

    def add_holiday(self, start_date, end_date, template_id=None, level_id=None):
        holiday = HolidayRange(start_date=start_date, end_date=end_date, template_id=template_id, level_id=level_id)
        self.tables['holidays'][self._next_id()] = holiday
        return holiday

    def add_cancellation(self, template_id, date):
        cancellation = Cancellation(template_id=template_id, date=date)
        self.tables['cancellations'][self._next_id()] = cancellation
        return cancellation

    def add_invoice(self, **fields):
        return self._insert('invoices', InvoiceRecord(id=self._next_id(), **fields))

    def add_payment(self, **fields):
        return self._insert('payments', PaymentRecord(id=self._next_id(), **fields))

    def add_allocation(self, *, payment_id, invoice_id, amount_cents):
        return self.create_allocation(payment_id=payment_id, invoice_id=invoice_id, amount_cents=amount_cents)

    # -- inspection ------------------------------------------------------

    def get_enrolment(self, enrolment_id):
        stored = self.tables['enrolments'].get(enrolment_id)
        if stored is None:
            return None
        plan = self.tables['plans'].get(stored.plan.id) if stored.plan else None
        templates = tuple(
            self.tables['templates'][template_id]
            for template_id in self.tables['assignments'].get(enrolment_id, [])
        )
        return replace(stored, plan=replace(plan) if plan else None, templates=templates)

    def rows(self, table, **filters):
        return [
            replace(record)
            for record in self.tables[table].values()
            if all(getattr(record, key) == value for key, value in filters.items())
        ]

    # -- BillingStore ----------------------------------------------------

    def find_payment_by_idempotency_key(self, family_id, idempotency_key):
        for payment in self.tables['payments'].values():
            if payment.family_id == family_id and payment.idempotency_key == idempotency_key:
                return replace(payment)
        return None

    def first_allocation_invoice_id(self, payment_id):
        for allocation in self.tables['allocations'].values():
            if allocation.payment_id == payment_id:
                return allocation.invoice_id
        return None

    def create_payment(self, *, family_id, amount_cents, paid_at, method='', note='', idempotency_key=None):
        if idempotency_key and self.find_payment_by_idempotency_key(family_id, idempotency_key):
            raise ConcurrencyConflict('A payment with this idempotency key was recorded concurrently.')
        return self._insert(
            'payments',
            PaymentRecord(
                id=self._next_id(),
                family_id=family_id,
                amount_cents=amount_cents,
                paid_at=paid_at,
                method=method or '',
                note=note or '',
                idempotency_key=idempotency_key,
            ),
        )

    def lock_enrolment(self, enrolment_id):
        return self.get_enrolment(enrolment_id)

    def get_plan(self, plan_id):
        plan = self.tables['plans'].get(plan_id)
        return replace(plan) if plan else None

    def save_enrolment_state(self, enrolment_id, *, expected_version, **changes):
        _check_state_fields(changes)
        stored = self.tables['enrolments'].get(enrolment_id)
        if stored is None or stored.version != expected_version:
            raise ConcurrencyConflict(f'Enrolment {enrolment_id} was changed by another transaction.')
        for key, value in changes.items():
            setattr(stored, key, value)
        stored.version += 1
        return stored.version

    def list_holidays(self, *, template_ids, level_ids, start_date=None):
        template_ids = set(template_ids)
        level_ids = {level_id for level_id in level_ids if level_id is not None}
        holidays = []
        for holiday in self.tables['holidays'].values():
            if holiday.template_id is not None and holiday.template_id not in template_ids:
                continue
            if holiday.template_id is None and holiday.level_id is not None and holiday.level_id not in level_ids:
                continue
            if start_date and holiday.end_date < start_date:
                continue
            holidays.append(holiday)
        return holidays

    def list_cancellations(self, *, template_ids, start_date=None):
        template_ids = set(template_ids)
        return [
            item
            for item in self.tables['cancellations'].values()
            if item.template_id in template_ids and (not start_date or item.date >= start_date)
        ]

    def add_credit_event(self, *, enrolment_id, event_type, credits_delta, occurred_on, note=''):
        return self._insert(
            'credit_events',
            CreditEventRecord(
                id=self._next_id(),
                enrolment_id=enrolment_id,
                event_type=event_type,
                credits_delta=credits_delta,
                occurred_on=occurred_on,
                note=note,
            ),
        )

    def sum_credit_events(self, enrolment_id):
        return sum(
            event.credits_delta
            for event in self.tables['credit_events'].values()
            if event.enrolment_id == enrolment_id
        )

    def list_weekly_purchases(self, enrolment_id):
        purchases = []
        for invoice in self.tables['invoices'].values():
            if (
                invoice.enrolment_id != enrolment_id
                or invoice.status == Invoice.STATUS_VOID
                or invoice.sessions_purchased is None
                or invoice.coverage_start is None
            ):
                continue
            plan_id = next(
                (item.plan_id for item in self.tables['line_items'].values() if item.invoice_id == invoice.id and item.plan_id),
                None,
            )
            plan = self.tables['plans'].get(plan_id)
            purchases.append(
                WeeklyPurchase(
                    invoice_id=invoice.id,
                    coverage_start=invoice.coverage_start,
                    sessions=invoice.sessions_purchased,
                    sessions_per_week=plan.sessions_per_week if plan else None,
                )
            )
        return sorted(purchases, key=lambda purchase: (purchase.coverage_start, purchase.invoice_id))

    def add_coverage_audit(self, *, enrolment_id, reason, previous_paid_through_date, next_paid_through_date, credits_remaining=None):
        return self._insert(
            'coverage_audits',
            CoverageAuditRecord(
                id=self._next_id(),
                enrolment_id=enrolment_id,
                reason=reason,
                previous_paid_through_date=previous_paid_through_date,
                next_paid_through_date=next_paid_through_date,
                credits_remaining=credits_remaining,
            ),
        )

    def create_invoice(self, **fields):
        return self._insert('invoices', InvoiceRecord(id=self._next_id(), **fields))

    def create_line_item(self, **fields):
        return self._insert('line_items', LineItemRecord(id=self._next_id(), **fields))

    def create_allocation(self, *, payment_id, invoice_id, amount_cents):
        payment = self.tables['payments'][payment_id]
        invoice = self.tables['invoices'][invoice_id]
        allocations = self.tables['allocations'].values()
        payment_total = sum(a.amount_cents for a in allocations if a.payment_id == payment_id)
        invoice_total = sum(a.amount_cents for a in allocations if a.invoice_id == invoice_id)
        if payment_total + amount_cents > payment.amount_cents:
            raise ValueError('Allocations cannot exceed the payment amount.')
        if invoice_total + amount_cents > invoice.amount_cents:
            raise ValueError('Allocations cannot exceed the invoice amount.')
        return self._insert(
            'allocations',
            AllocationRecord(id=self._next_id(), payment_id=payment_id, invoice_id=invoice_id, amount_cents=amount_cents),
        )

    def load_family_ledger(self, family_id):
        enrolments = [
            self.get_enrolment(record.id)
            for record in self.tables['enrolments'].values()
            if record.family_id == family_id and record.is_billing_primary
        ]
        invoices = {
            invoice.id: invoice
            for invoice in self.tables['invoices'].values()
            if invoice.family_id == family_id
        }
        payments = {
            payment.id: payment
            for payment in self.tables['payments'].values()
            if payment.family_id == family_id and payment.status != Payment.STATUS_VOID
        }

        allocation_totals = {}
        for allocation in self.tables['allocations'].values():
            invoice = invoices.get(allocation.invoice_id)
            if invoice is None or invoice.status == Invoice.STATUS_VOID or allocation.payment_id not in payments:
                continue
            allocation_totals[invoice.id] = allocation_totals.get(invoice.id, 0) + allocation.amount_cents

        return FamilyLedgerSnapshot(
            enrolments=enrolments,
            open_invoices=[replace(invoice) for invoice in invoices.values() if invoice.status in OPEN_INVOICE_STATUSES],
            allocation_totals_by_invoice_id=allocation_totals,
            invoice_totals_by_id={
                invoice_id: InvoiceTotal(amount_cents=invoices[invoice_id].amount_cents, status=invoices[invoice_id].status)
                for invoice_id in allocation_totals
            },
            payments_total_cents=sum(payment.amount_cents for payment in payments.values()),
        )


def get_default_store() -> BillingStore:
    return DjangoBillingStore()
