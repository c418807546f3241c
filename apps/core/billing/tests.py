from datetime import date, datetime
from io import StringIO
from zoneinfo import ZoneInfo

from django.core.management import call_command
from django.db import transaction
from django.test import SimpleTestCase, TestCase

from apps.core.enrolments.models import (
    BillingPlan,
    Enrolment,
    EnrolmentClassAssignment,
    EnrolmentCoverageAudit,
    EnrolmentCreditEvent,
)
from apps.core.families.models import Family, Student
from apps.core.schedule.models import ClassTemplate, Holiday

from .exceptions import ConcurrencyConflict, OwnershipError, ScheduleResolutionError, ValidationError
from .models import Invoice, Payment, PaymentAllocation
from .records import InvoiceTotal
from .services import record_payment, record_payment_with_retry, recalculate_enrolment_coverage
from .stores import DjangoBillingStore, InMemoryBillingStore
from .summary import (
    BreakdownEntry,
    EnrolmentSummaryInput,
    FamilyBillingSummary,
    OpenInvoiceInput,
    compute_family_billing_summary,
    compute_family_net_owing,
    compute_family_net_owing_from_data,
    enrolment_is_payable,
)


BRISBANE = ZoneInfo('Australia/Brisbane')


class StaleEnrolmentStore(InMemoryBillingStore):
    """Simulates another writer bumping the enrolment right after it is read."""

    def __init__(self, conflicts=1):
        super().__init__()
        self.conflicts = conflicts

    def lock_enrolment(self, enrolment_id):
        record = super().lock_enrolment(enrolment_id)
        if record is not None and self.conflicts:
            self.conflicts -= 1
            self.tables['enrolments'][enrolment_id].version += 1
        return record


class FailingAllocationStore(InMemoryBillingStore):
    def create_allocation(self, *, payment_id, invoice_id, amount_cents):
        raise RuntimeError('allocation write failed')


class InMemoryBillingTestCase(SimpleTestCase):
    store_class = InMemoryBillingStore

    def setUp(self):
        self.store = self.store_class()
        self.family_id = self.store.add_family('Nguyen family')
        self.student_id = self.store.add_student(self.family_id, 'Lan')
        self.monday = self.store.add_template(0, name='Monday juniors')
        self.wednesday = self.store.add_template(2, name='Wednesday juniors')
        self.weekly_plan = self.store.add_plan(
            name='Term',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=22000,
            duration_weeks=4,
            sessions_per_week=1,
        )
        self.block_plan = self.store.add_plan(
            name='5-class pass',
            billing_type=BillingPlan.TYPE_PER_CLASS,
            price_cents=12500,
            block_class_count=5,
        )
        self.paid_at = datetime(2025, 1, 6, 9, 0, tzinfo=BRISBANE)
        self.today = date(2025, 1, 6)

    def weekly_enrolment(self, **fields):
        return self.store.add_enrolment(
            student_id=self.student_id,
            plan_id=self.weekly_plan.id,
            start_date=date(2025, 1, 6),
            template_ids=[self.monday.template_id],
            **fields,
        )

    def block_enrolment(self, **fields):
        return self.store.add_enrolment(
            student_id=self.student_id,
            plan_id=self.block_plan.id,
            start_date=date(2025, 1, 6),
            template_ids=[self.monday.template_id],
            **fields,
        )

    def pay(self, enrolment=None, amount_cents=22000, **kwargs):
        kwargs.setdefault('paid_at', self.paid_at)
        kwargs.setdefault('as_of_date', self.today)
        return record_payment(
            family_id=self.family_id,
            amount_cents=amount_cents,
            enrolment_id=enrolment.id if enrolment else None,
            store=self.store,
            **kwargs,
        )


class WeeklyPaymentTests(InMemoryBillingTestCase):
    def test_weekly_payment_advances_watermark_and_writes_receipt(self):
        enrolment = self.weekly_enrolment()

        result = self.pay(enrolment, method=' card ', note='Term 1')

        updated = self.store.get_enrolment(enrolment.id)
        self.assertEqual(updated.paid_through_date, date(2025, 1, 27))
        self.assertEqual(updated.paid_through_date_base, date(2025, 1, 27))

        payment = result['payment']
        self.assertEqual(payment.amount_cents, 22000)
        self.assertEqual(payment.method, 'card')

        invoice = self.store.rows('invoices')[0]
        self.assertEqual(result['receipt_invoice_id'], invoice.id)
        self.assertEqual(invoice.status, Invoice.STATUS_PAID)
        self.assertEqual(invoice.amount_paid_cents, 22000)
        self.assertEqual((invoice.coverage_start, invoice.coverage_end), (date(2025, 1, 6), date(2025, 1, 27)))
        self.assertEqual(invoice.sessions_purchased, 4)
        self.assertIsNone(invoice.credits_purchased)

        line_item = self.store.rows('line_items', invoice_id=invoice.id)[0]
        self.assertEqual(line_item.description, 'Term')
        self.assertEqual(line_item.plan_id, self.weekly_plan.id)

        allocation = self.store.rows('allocations')[0]
        self.assertEqual((allocation.payment_id, allocation.invoice_id, allocation.amount_cents), (payment.id, invoice.id, 22000))

        audits = self.store.rows('coverage_audits', enrolment_id=enrolment.id)
        self.assertEqual([audit.reason for audit in audits], [EnrolmentCoverageAudit.REASON_INVOICE_APPLIED])

    def test_watermark_never_moves_backwards(self):
        enrolment = self.weekly_enrolment()

        watermarks = []
        for as_of in (date(2025, 1, 6), date(2025, 1, 6), date(2025, 1, 10)):
            self.pay(enrolment, as_of_date=as_of)
            watermarks.append(self.store.get_enrolment(enrolment.id).paid_through_date)

        self.assertEqual(watermarks, [date(2025, 1, 27), date(2025, 2, 24), date(2025, 3, 24)])
        self.assertEqual(watermarks, sorted(watermarks))

    def test_lapsed_enrolment_restarts_from_today(self):
        enrolment = self.weekly_enrolment(paid_through_date=date(2025, 1, 13))

        self.pay(enrolment, as_of_date=date(2025, 3, 5))

        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 3, 31))

    def test_holiday_extends_coverage_but_not_baseline(self):
        enrolment = self.weekly_enrolment()
        self.store.add_holiday(date(2025, 1, 13), date(2025, 1, 19))

        self.pay(enrolment)

        updated = self.store.get_enrolment(enrolment.id)
        self.assertEqual(updated.paid_through_date, date(2025, 2, 3))
        self.assertEqual(updated.paid_through_date_base, date(2025, 1, 27))

    def test_multi_session_enrolment_interleaves(self):
        plan = self.store.add_plan(
            name='Twice weekly',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=30000,
            duration_weeks=4,
            sessions_per_week=2,
        )
        enrolment = self.store.add_enrolment(
            student_id=self.student_id,
            plan_id=plan.id,
            start_date=date(2025, 1, 6),
            template_ids=[self.wednesday.template_id, self.monday.template_id],
        )

        self.pay(enrolment, amount_cents=30000)

        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 1, 29))

    def test_plan_switch_forces_selected_plan_price(self):
        enrolment = self.weekly_enrolment()
        longer = self.store.add_plan(
            name='Half year',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=40000,
            duration_weeks=8,
            sessions_per_week=1,
        )

        result = self.pay(enrolment, amount_cents=100, plan_id=longer.id)

        self.assertEqual(result['payment'].amount_cents, 40000)
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 2, 24))
        line_item = self.store.rows('line_items')[0]
        self.assertEqual((line_item.plan_id, line_item.amount_cents), (longer.id, 40000))

    def test_plan_switch_must_match_level(self):
        levelled = self.store.add_plan(
            name='Levelled',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=22000,
            duration_weeks=4,
            sessions_per_week=1,
            level_id=1,
        )
        enrolment = self.store.add_enrolment(
            student_id=self.student_id,
            plan_id=levelled.id,
            start_date=date(2025, 1, 6),
            template_ids=[self.monday.template_id],
        )
        other_level = self.store.add_plan(
            name='Other level',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=22000,
            duration_weeks=4,
            sessions_per_week=1,
            level_id=2,
        )

        with self.assertRaises(ValidationError):
            self.pay(enrolment, plan_id=other_level.id)
        self.assertEqual(self.store.rows('payments'), [])

    def test_weekly_enrolment_without_template_fails_cleanly(self):
        enrolment = self.store.add_enrolment(
            student_id=self.student_id,
            plan_id=self.weekly_plan.id,
            start_date=date(2025, 1, 6),
        )

        with self.assertRaises(ScheduleResolutionError):
            self.pay(enrolment)
        self.assertEqual(self.store.rows('payments'), [])
        self.assertEqual(self.store.rows('invoices'), [])

    def test_custom_block_length_rejected_for_weekly_plans(self):
        enrolment = self.weekly_enrolment()

        with self.assertRaises(ValidationError):
            self.pay(enrolment, custom_block_length=10)


class BlockPaymentTests(InMemoryBillingTestCase):
    def test_block_purchase_appends_ledger_and_refreshes_cache(self):
        enrolment = self.block_enrolment(credits_remaining=-2)
        self.store.add_credit_event(
            enrolment_id=enrolment.id,
            event_type=EnrolmentCreditEvent.TYPE_CONSUME,
            credits_delta=-2,
            occurred_on=date(2025, 1, 1),
        )

        result = self.pay(enrolment, amount_cents=12500)

        updated = self.store.get_enrolment(enrolment.id)
        self.assertEqual(updated.credits_remaining, 3)
        self.assertEqual(updated.paid_through_date, date(2025, 2, 3))

        events = self.store.rows('credit_events', enrolment_id=enrolment.id)
        self.assertEqual([event.credits_delta for event in events], [-2, 5])
        self.assertEqual(events[-1].event_type, EnrolmentCreditEvent.TYPE_PURCHASE)

        invoice = self.store.rows('invoices')[0]
        self.assertEqual(invoice.id, result['receipt_invoice_id'])
        self.assertEqual(invoice.credits_purchased, 5)
        self.assertEqual((invoice.coverage_start, invoice.coverage_end), (date(2025, 1, 6), date(2025, 2, 3)))

    def test_custom_block_charges_computed_total(self):
        enrolment = self.block_enrolment()

        result = self.pay(enrolment, amount_cents=12500, custom_block_length=7)

        self.assertEqual(result['payment'].amount_cents, 17500)
        self.assertEqual(self.store.get_enrolment(enrolment.id).credits_remaining, 7)
        line_item = self.store.rows('line_items')[0]
        self.assertEqual(
            line_item.description,
            '5-class pass · Custom block: 7 classes @ $25.00/class (2025-01-06 to 2025-02-17)',
        )

    def test_default_length_custom_block_has_no_note(self):
        enrolment = self.block_enrolment()

        self.pay(enrolment, amount_cents=12500, custom_block_length=5)

        self.assertEqual(self.store.rows('line_items')[0].description, '5-class pass')

    def test_short_custom_block_rolls_back(self):
        enrolment = self.block_enrolment()

        with self.assertRaises(ValidationError):
            self.pay(enrolment, amount_cents=12500, custom_block_length=3)

        self.assertEqual(self.store.rows('payments'), [])
        self.assertEqual(self.store.rows('credit_events'), [])
        self.assertEqual(self.store.get_enrolment(enrolment.id).credits_remaining, 0)

    def test_plan_switch_not_allowed_for_block_plans(self):
        enrolment = self.block_enrolment()

        with self.assertRaises(ValidationError):
            self.pay(enrolment, plan_id=self.weekly_plan.id)


class PaymentGuardTests(InMemoryBillingTestCase):
    def test_idempotent_replay_returns_first_result(self):
        enrolment = self.weekly_enrolment()

        first = self.pay(enrolment, idempotency_key='retry-1')
        watermark = self.store.get_enrolment(enrolment.id).paid_through_date
        second = self.pay(enrolment, idempotency_key='retry-1')

        self.assertEqual(second['payment'].id, first['payment'].id)
        self.assertEqual(second['receipt_invoice_id'], first['receipt_invoice_id'])
        self.assertEqual(len(self.store.rows('payments')), 1)
        self.assertEqual(len(self.store.rows('invoices')), 1)
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, watermark)

    def test_same_key_for_another_family_is_independent(self):
        other_family = self.store.add_family('Other family')

        self.pay(idempotency_key='shared', amount_cents=1000)
        record_payment(
            family_id=other_family,
            amount_cents=1000,
            idempotency_key='shared',
            paid_at=self.paid_at,
            store=self.store,
        )

        self.assertEqual(len(self.store.rows('payments')), 2)

    def test_payment_without_enrolment_is_a_deposit(self):
        result = self.pay(amount_cents=5000)

        self.assertIsNone(result['receipt_invoice_id'])
        self.assertEqual(result['payment'].amount_cents, 5000)
        self.assertEqual(self.store.rows('invoices'), [])

    def test_amount_must_be_positive_whole_cents(self):
        for amount in (0, -100, 10.5, True):
            with self.subTest(amount=amount), self.assertRaises(ValidationError):
                self.pay(amount_cents=amount)

    def test_enrolment_of_another_family_is_rejected(self):
        other_family = self.store.add_family('Other family')
        other_student = self.store.add_student(other_family)
        enrolment = self.store.add_enrolment(
            student_id=other_student,
            plan_id=self.weekly_plan.id,
            start_date=date(2025, 1, 6),
            template_ids=[self.monday.template_id],
        )

        with self.assertRaises(OwnershipError):
            self.pay(enrolment)
        self.assertEqual(self.store.rows('payments'), [])
        self.assertIsNone(self.store.get_enrolment(enrolment.id).paid_through_date)

    def test_unknown_enrolment_and_missing_plan(self):
        with self.assertRaises(ValidationError):
            record_payment(family_id=self.family_id, amount_cents=100, enrolment_id=999, store=self.store)

        planless = self.store.add_enrolment(student_id=self.student_id, plan_id=None, start_date=date(2025, 1, 6))
        with self.assertRaises(ValidationError):
            self.pay(planless)


class FailingAllocationTests(InMemoryBillingTestCase):
    store_class = FailingAllocationStore

    def test_failure_late_in_transaction_leaves_no_partial_state(self):
        enrolment = self.block_enrolment()

        with self.assertRaises(RuntimeError):
            self.pay(enrolment, amount_cents=12500)

        self.assertEqual(self.store.rows('payments'), [])
        self.assertEqual(self.store.rows('invoices'), [])
        self.assertEqual(self.store.rows('credit_events'), [])
        updated = self.store.get_enrolment(enrolment.id)
        self.assertEqual((updated.credits_remaining, updated.version), (0, 0))


class InMemoryTransactionTests(InMemoryBillingTestCase):
    def test_failed_inner_block_rolls_back_alone(self):
        with self.store.atomic():
            self.store.create_payment(family_id=self.family_id, amount_cents=100, paid_at=self.paid_at)
            with self.assertRaises(RuntimeError):
                with self.store.atomic():
                    self.store.create_payment(family_id=self.family_id, amount_cents=200, paid_at=self.paid_at)
                    raise RuntimeError('inner write failed')
            self.store.create_payment(family_id=self.family_id, amount_cents=300, paid_at=self.paid_at)

        self.assertEqual([payment.amount_cents for payment in self.store.rows('payments')], [100, 300])

    def test_failed_outer_block_discards_committed_inner_block(self):
        with self.assertRaises(RuntimeError):
            with self.store.atomic():
                with self.store.atomic():
                    self.store.create_payment(family_id=self.family_id, amount_cents=200, paid_at=self.paid_at)
                raise RuntimeError('outer write failed')

        self.assertEqual(self.store.rows('payments'), [])


class ConcurrencyTests(InMemoryBillingTestCase):
    store_class = StaleEnrolmentStore

    def test_stale_enrolment_raises_conflict_and_rolls_back(self):
        enrolment = self.weekly_enrolment()

        with self.assertRaises(ConcurrencyConflict) as ctx:
            self.pay(enrolment)

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.store.rows('payments'), [])
        self.assertIsNone(self.store.get_enrolment(enrolment.id).paid_through_date)

    def test_retry_succeeds_after_conflict(self):
        enrolment = self.weekly_enrolment()

        result = record_payment_with_retry(
            family_id=self.family_id,
            amount_cents=22000,
            enrolment_id=enrolment.id,
            paid_at=self.paid_at,
            as_of_date=self.today,
            store=self.store,
        )

        self.assertEqual(len(self.store.rows('payments')), 1)
        self.assertEqual(result['payment'].amount_cents, 22000)
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 1, 27))

    def test_retry_gives_up(self):
        self.store.conflicts = 10
        enrolment = self.weekly_enrolment()

        with self.assertRaises(ConcurrencyConflict):
            record_payment_with_retry(
                attempts=3,
                family_id=self.family_id,
                amount_cents=22000,
                enrolment_id=enrolment.id,
                store=self.store,
            )
        self.assertEqual(self.store.conflicts, 7)


class CoverageRecalculationTests(InMemoryBillingTestCase):
    def test_new_holiday_extends_paid_coverage(self):
        enrolment = self.weekly_enrolment()
        self.pay(enrolment)
        self.store.add_holiday(date(2025, 1, 13), date(2025, 1, 19))

        result = recalculate_enrolment_coverage(
            enrolment.id,
            EnrolmentCoverageAudit.REASON_HOLIDAY_CHANGED,
            store=self.store,
        )

        self.assertEqual(result, date(2025, 2, 3))
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 2, 3))
        audit = self.store.rows('coverage_audits', enrolment_id=enrolment.id)[-1]
        self.assertEqual(
            (audit.previous_paid_through_date, audit.next_paid_through_date),
            (date(2025, 1, 27), date(2025, 2, 3)),
        )

    def test_recalculation_never_shortens(self):
        enrolment = self.weekly_enrolment()
        self.store.add_holiday(date(2025, 1, 13), date(2025, 1, 19))
        self.pay(enrolment)
        self.store.tables['holidays'].clear()

        recalculate_enrolment_coverage(enrolment.id, EnrolmentCoverageAudit.REASON_MANUAL, store=self.store)

        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 2, 3))

    def recalculate(self, enrolment):
        return recalculate_enrolment_coverage(
            enrolment.id,
            EnrolmentCoverageAudit.REASON_HOLIDAY_CHANGED,
            store=self.store,
        )

    def test_unchanged_closures_leave_multi_payment_coverage_alone(self):
        enrolment = self.weekly_enrolment()
        self.store.add_holiday(date(2025, 1, 13), date(2025, 1, 19))
        self.pay(enrolment)
        self.pay(enrolment)
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 3, 3))

        self.assertEqual(self.recalculate(enrolment), date(2025, 3, 3))
        self.assertEqual(self.recalculate(enrolment), date(2025, 3, 3))
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 3, 3))

    def test_holiday_in_unpaid_gap_grants_nothing(self):
        enrolment = self.weekly_enrolment()
        self.store.add_holiday(date(2025, 1, 13), date(2025, 1, 19))
        self.pay(enrolment, as_of_date=date(2025, 2, 3))
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 2, 24))

        self.assertEqual(self.recalculate(enrolment), date(2025, 2, 24))

    def test_new_holiday_only_shifts_the_purchase_it_displaces(self):
        enrolment = self.weekly_enrolment()
        self.pay(enrolment)
        self.pay(enrolment)
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 2, 24))
        self.store.add_holiday(date(2025, 2, 10), date(2025, 2, 16))

        self.assertEqual(self.recalculate(enrolment), date(2025, 3, 3))

    def test_receipts_after_a_lapse_keep_their_own_start(self):
        enrolment = self.weekly_enrolment()
        self.pay(enrolment)
        self.pay(enrolment, as_of_date=date(2025, 3, 5))
        self.assertEqual(self.store.get_enrolment(enrolment.id).paid_through_date, date(2025, 3, 31))
        self.store.add_holiday(date(2025, 2, 3), date(2025, 2, 9))

        self.assertEqual(self.recalculate(enrolment), date(2025, 3, 31))

    def test_credit_cache_is_rebuilt_from_ledger(self):
        enrolment = self.block_enrolment(credits_remaining=99)
        self.store.add_credit_event(
            enrolment_id=enrolment.id,
            event_type=EnrolmentCreditEvent.TYPE_ADJUSTMENT,
            credits_delta=4,
            occurred_on=date(2025, 1, 6),
        )

        recalculate_enrolment_coverage(enrolment.id, EnrolmentCoverageAudit.REASON_MANUAL, store=self.store)

        self.assertEqual(self.store.get_enrolment(enrolment.id).credits_remaining, 4)
        self.assertEqual(self.store.rows('coverage_audits')[0].credits_remaining, 4)


class BillingSummaryTests(SimpleTestCase):
    def weekly(self, paid_through, **fields):
        return EnrolmentSummaryInput(
            id=fields.pop('id', 1),
            student_id=1,
            plan_id=1,
            billing_type=BillingPlan.TYPE_PER_WEEK,
            plan_price_cents=fields.pop('price', 5000),
            paid_through_date=paid_through,
            **fields,
        )

    def test_overdue_weeks_are_priced_per_period(self):
        summary = compute_family_billing_summary([self.weekly(date(2026, 1, 1))], date(2026, 1, 15))

        self.assertEqual(summary.overdue_owing_cents, 10000)
        self.assertEqual(summary.total_owing_cents, 10000)
        self.assertEqual(summary.breakdown[0].overdue_periods, 2)
        self.assertEqual(summary.breakdown[0].paid_through_day_key, '2026-01-01')
        self.assertEqual(summary.next_payment_due_day_key, '2026-01-15')

    def test_paid_through_today_owes_nothing(self):
        summary = compute_family_billing_summary([self.weekly(date(2026, 1, 15))], date(2026, 1, 15))

        self.assertEqual(summary.overdue_owing_cents, 0)

    def test_block_overdue_uses_credit_balance(self):
        block = EnrolmentSummaryInput(
            id=2,
            student_id=1,
            plan_id=2,
            billing_type=BillingPlan.TYPE_PER_CLASS,
            plan_price_cents=12500,
            block_class_count=5,
            credits_remaining=-6,
        )

        summary = compute_family_billing_summary([block], date(2026, 1, 15))

        self.assertEqual(summary.breakdown[0].overdue_periods, 2)
        self.assertEqual(summary.overdue_owing_cents, 25000)

    def test_next_payment_due_is_earliest_watermark(self):
        summary = compute_family_billing_summary(
            [self.weekly(date(2026, 3, 1), id=1), self.weekly(date(2026, 2, 1), id=2)],
            date(2026, 1, 15),
        )

        self.assertEqual(summary.next_payment_due_day_key, '2026-02-01')
        self.assertEqual(summary.overdue_owing_cents, 0)

    def test_enrolments_without_plan_are_skipped(self):
        summary = compute_family_billing_summary(
            [EnrolmentSummaryInput(id=1, student_id=1, plan_id=None, billing_type=None)],
            date(2026, 1, 15),
        )

        self.assertEqual(summary.breakdown, [])
        self.assertIsNone(summary.next_payment_due_day_key)

    def test_payable_enrolments(self):
        self.assertTrue(enrolment_is_payable(status=Enrolment.STATUS_ACTIVE))
        self.assertTrue(enrolment_is_payable(status=Enrolment.STATUS_CHANGEOVER, paid_through_date=date(2026, 1, 1)))
        self.assertFalse(enrolment_is_payable(status=Enrolment.STATUS_PAUSED))
        self.assertFalse(
            enrolment_is_payable(
                status=Enrolment.STATUS_ACTIVE,
                paid_through_date=date(2026, 6, 30),
                end_date=date(2026, 6, 30),
            )
        )


class NetOwingTests(SimpleTestCase):
    def summary_for(self, enrolment_id, overdue_cents):
        return FamilyBillingSummary(
            overdue_owing_cents=overdue_cents,
            total_owing_cents=overdue_cents,
            breakdown=[
                BreakdownEntry(
                    enrolment_id=enrolment_id,
                    student_id=1,
                    plan_id=1,
                    plan_type=BillingPlan.TYPE_PER_WEEK,
                    paid_through_day_key='2026-01-01',
                    overdue_periods=1,
                    overdue_owing_cents=overdue_cents,
                )
            ],
        )

    def test_open_invoice_for_enrolment_is_not_double_counted(self):
        invoice = OpenInvoiceInput(id=1, amount_cents=5000, status=Invoice.STATUS_SENT, enrolment_id='e1')

        result = compute_family_net_owing_from_data(
            summary=self.summary_for('e1', 5000),
            open_invoices=[invoice],
            allocation_totals_by_invoice_id={},
            invoice_totals_by_id={},
            payments_total_cents=0,
            today=date(2026, 1, 15),
        )

        self.assertEqual(result.overdue_owing_cents, 0)
        self.assertEqual(result.invoice_outstanding_cents, 5000)
        self.assertEqual(result.net_owing_cents, 5000)

    def test_only_current_invoice_coverage_suppresses_overdue(self):
        summary = self.summary_for('e1', 5000)
        current = OpenInvoiceInput(
            id=1,
            amount_cents=5000,
            status=Invoice.STATUS_SENT,
            enrolment_id='e1',
            coverage_end=date(2026, 1, 15),
        )
        expired = OpenInvoiceInput(
            id=2,
            amount_cents=5000,
            status=Invoice.STATUS_OVERDUE,
            enrolment_id='e1',
            coverage_end=date(2026, 1, 14),
        )

        covered = compute_family_net_owing_from_data(
            summary=summary,
            open_invoices=[expired, current],
            allocation_totals_by_invoice_id={},
            invoice_totals_by_id={},
            payments_total_cents=0,
            today=date(2026, 1, 15),
        )
        lapsed = compute_family_net_owing_from_data(
            summary=summary,
            open_invoices=[expired],
            allocation_totals_by_invoice_id={},
            invoice_totals_by_id={},
            payments_total_cents=0,
            today=date(2026, 1, 15),
        )

        self.assertEqual(covered.overdue_owing_cents, 0)
        self.assertEqual(lapsed.overdue_owing_cents, 5000)
        self.assertEqual(lapsed.net_owing_cents, 10000)

    def test_unallocated_payments_are_credit(self):
        result = compute_family_net_owing_from_data(
            summary=FamilyBillingSummary(),
            open_invoices=[],
            allocation_totals_by_invoice_id={},
            invoice_totals_by_id={},
            payments_total_cents=12000,
        )

        self.assertEqual(result.unallocated_credit_cents, 12000)
        self.assertEqual(result.net_owing_cents, -12000)

    def test_outstanding_uses_larger_of_paid_and_allocated(self):
        invoice = OpenInvoiceInput(
            id=7,
            amount_cents=10000,
            amount_paid_cents=1000,
            status=Invoice.STATUS_PARTIALLY_PAID,
        )

        result = compute_family_net_owing_from_data(
            summary=FamilyBillingSummary(),
            open_invoices=[invoice],
            allocation_totals_by_invoice_id={7: 4000},
            invoice_totals_by_id={7: InvoiceTotal(amount_cents=10000, status=Invoice.STATUS_PARTIALLY_PAID)},
            payments_total_cents=4000,
        )

        self.assertEqual(result.invoice_outstanding_cents, 6000)
        self.assertEqual(result.unallocated_credit_cents, 0)
        self.assertEqual(result.net_owing_cents, 6000)

    def test_allocations_to_void_invoices_stay_credit(self):
        result = compute_family_net_owing_from_data(
            summary=FamilyBillingSummary(),
            open_invoices=[],
            allocation_totals_by_invoice_id={3: 8000, 4: 2000},
            invoice_totals_by_id={
                3: InvoiceTotal(amount_cents=8000, status=Invoice.STATUS_VOID),
                4: InvoiceTotal(amount_cents=1500, status=Invoice.STATUS_PAID),
            },
            payments_total_cents=10000,
        )

        self.assertEqual(result.unallocated_credit_cents, 8500)
        self.assertEqual(result.net_owing_cents, -8500)

    def test_empty_breakdown_falls_back_to_total(self):
        result = compute_family_net_owing_from_data(
            summary=FamilyBillingSummary(total_owing_cents=3000),
            open_invoices=[],
            allocation_totals_by_invoice_id={},
            invoice_totals_by_id={},
            payments_total_cents=0,
        )

        self.assertEqual(result.overdue_owing_cents, 3000)


class FamilyNetOwingStoreTests(InMemoryBillingTestCase):
    def test_reads_payable_enrolments_invoices_and_payments(self):
        active = self.weekly_enrolment(paid_through_date=date(2026, 1, 1))
        self.weekly_enrolment(status=Enrolment.STATUS_ENDED)
        self.weekly_enrolment(paid_through_date=date(2026, 6, 30), end_date=date(2026, 6, 30))
        self.weekly_enrolment(paid_through_date=date(2026, 1, 1), is_billing_primary=False)
        self.store.add_payment(family_id=self.family_id, amount_cents=3000, paid_at=self.paid_at)

        result = compute_family_net_owing(self.family_id, store=self.store, today=date(2026, 1, 15))

        self.assertEqual(result.overdue_owing_cents, 44000)
        self.assertEqual(result.unallocated_credit_cents, 3000)
        self.assertEqual(result.net_owing_cents, 41000)

        self.store.add_invoice(
            family_id=self.family_id,
            enrolment_id=active.id,
            amount_cents=22000,
            status=Invoice.STATUS_SENT,
            coverage_end=date(2026, 2, 1),
        )

        result = compute_family_net_owing(self.family_id, store=self.store, today=date(2026, 1, 15))

        self.assertEqual(result.overdue_owing_cents, 0)
        self.assertEqual(result.invoice_outstanding_cents, 22000)
        self.assertEqual(result.net_owing_cents, 19000)

    def test_void_payments_and_other_families_are_ignored(self):
        other_family = self.store.add_family('Other family')
        self.store.add_payment(family_id=other_family, amount_cents=9000, paid_at=self.paid_at)
        self.store.add_payment(family_id=self.family_id, amount_cents=9000, paid_at=self.paid_at, status=Payment.STATUS_VOID)

        result = compute_family_net_owing(self.family_id, store=self.store, today=date(2026, 1, 15))

        self.assertEqual(result.net_owing_cents, 0)

    def test_payment_then_summary_nets_to_zero(self):
        enrolment = self.weekly_enrolment()
        self.pay(enrolment)

        result = compute_family_net_owing(self.family_id, store=self.store, today=date(2025, 1, 20))

        self.assertEqual(result.overdue_owing_cents, 0)
        self.assertEqual(result.invoice_outstanding_cents, 0)
        self.assertEqual(result.unallocated_credit_cents, 0)
        self.assertEqual(result.net_owing_cents, 0)


class DjangoStoreBaseTestCase(TestCase):
    def setUp(self):
        self.store = DjangoBillingStore()
        self.family = Family.objects.create(name='Nguyen family')
        self.student = Student.objects.create(family=self.family, first_name='Lan')
        self.monday = ClassTemplate.objects.create(name='Monday juniors', day_of_week=0)
        self.weekly_plan = BillingPlan.objects.create(
            name='Term',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=22000,
            duration_weeks=4,
            sessions_per_week=1,
        )
        self.block_plan = BillingPlan.objects.create(
            name='5-class pass',
            billing_type=BillingPlan.TYPE_PER_CLASS,
            price_cents=12500,
            block_class_count=5,
        )
        self.enrolment = Enrolment.objects.create(
            student=self.student,
            plan=self.weekly_plan,
            template=self.monday,
            start_date=date(2025, 1, 6),
        )
        self.paid_at = datetime(2025, 1, 6, 9, 0, tzinfo=BRISBANE)

    def pay(self, enrolment=None, amount_cents=22000, **kwargs):
        kwargs.setdefault('paid_at', self.paid_at)
        kwargs.setdefault('as_of_date', date(2025, 1, 6))
        return record_payment(
            family_id=self.family.id,
            amount_cents=amount_cents,
            enrolment_id=enrolment.id if enrolment else None,
            store=self.store,
            **kwargs,
        )


class DjangoStorePaymentTests(DjangoStoreBaseTestCase):
    def test_weekly_payment_persists_everything(self):
        result = self.pay(self.enrolment)

        self.enrolment.refresh_from_db()
        self.assertEqual(self.enrolment.paid_through_date, date(2025, 1, 27))
        self.assertEqual(self.enrolment.paid_through_date_base, date(2025, 1, 27))
        self.assertEqual(self.enrolment.version, 1)

        invoice = Invoice.objects.get(pk=result['receipt_invoice_id'])
        self.assertEqual(invoice.status, Invoice.STATUS_PAID)
        self.assertEqual(invoice.coverage_end, date(2025, 1, 27))
        self.assertEqual(invoice.line_items.get().plan, self.weekly_plan)
        self.assertEqual(PaymentAllocation.objects.get().amount_cents, 22000)
        self.assertEqual(self.enrolment.coverage_audits.count(), 1)

    def test_holiday_and_assignments_are_read_from_the_database(self):
        wednesday = ClassTemplate.objects.create(name='Wednesday juniors', day_of_week=2)
        EnrolmentClassAssignment.objects.create(enrolment=self.enrolment, template=self.monday)
        EnrolmentClassAssignment.objects.create(enrolment=self.enrolment, template=wednesday)
        Holiday.objects.create(name='Closure', start_date=date(2025, 1, 6), end_date=date(2025, 1, 12))
        twice = BillingPlan.objects.create(
            name='Twice weekly',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=30000,
            duration_weeks=2,
            sessions_per_week=2,
        )
        self.enrolment.plan = twice
        self.enrolment.save()

        self.pay(self.enrolment, amount_cents=30000)

        self.enrolment.refresh_from_db()
        self.assertEqual(self.enrolment.paid_through_date, date(2025, 1, 22))
        self.assertEqual(self.enrolment.paid_through_date_base, date(2025, 1, 15))

    def test_block_payment_writes_ledger(self):
        self.enrolment.plan = self.block_plan
        self.enrolment.save()

        self.pay(self.enrolment, amount_cents=12500)

        self.enrolment.refresh_from_db()
        self.assertEqual(self.enrolment.credits_remaining, 5)
        self.assertEqual(EnrolmentCreditEvent.objects.get().credits_delta, 5)
        self.assertEqual(Invoice.objects.get().credits_purchased, 5)

    def test_idempotent_replay(self):
        first = self.pay(self.enrolment, idempotency_key='abc')
        second = self.pay(self.enrolment, idempotency_key='abc')

        self.assertEqual(first['payment'].id, second['payment'].id)
        self.assertEqual(Payment.objects.count(), 1)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_ownership_failure_writes_nothing(self):
        other = Family.objects.create(name='Other family')

        with self.assertRaises(OwnershipError):
            record_payment(
                family_id=other.id,
                amount_cents=22000,
                enrolment_id=self.enrolment.id,
                store=self.store,
            )

        self.assertFalse(Payment.objects.exists())
        self.assertFalse(Invoice.objects.exists())

    def test_duplicate_key_insert_is_a_conflict(self):
        with transaction.atomic():
            self.store.create_payment(family_id=self.family.id, amount_cents=100, paid_at=self.paid_at, idempotency_key='k')
            with self.assertRaises(ConcurrencyConflict):
                self.store.create_payment(
                    family_id=self.family.id,
                    amount_cents=100,
                    paid_at=self.paid_at,
                    idempotency_key='k',
                )

        self.assertEqual(Payment.objects.count(), 1)

    def test_stale_version_is_a_conflict(self):
        with self.assertRaises(ConcurrencyConflict):
            self.store.save_enrolment_state(self.enrolment.id, expected_version=5, credits_remaining=1)

        self.assertEqual(self.store.save_enrolment_state(self.enrolment.id, expected_version=0, credits_remaining=1), 1)

    def test_recalculation_replays_weekly_receipts(self):
        self.pay(self.enrolment)
        self.pay(self.enrolment)
        Holiday.objects.create(name='Closure', start_date=date(2025, 2, 10), end_date=date(2025, 2, 16))

        reason = EnrolmentCoverageAudit.REASON_HOLIDAY_CHANGED
        first = recalculate_enrolment_coverage(self.enrolment.id, reason, store=self.store)
        second = recalculate_enrolment_coverage(self.enrolment.id, reason, store=self.store)

        self.assertEqual((first, second), (date(2025, 3, 3), date(2025, 3, 3)))
        self.enrolment.refresh_from_db()
        self.assertEqual(self.enrolment.paid_through_date, date(2025, 3, 3))
        self.assertEqual(Invoice.objects.filter(sessions_purchased=4).count(), 2)

    def test_net_owing_from_database(self):
        self.pay(amount_cents=12000)

        result = compute_family_net_owing(self.family.id, store=self.store, today=date(2025, 1, 6))

        self.assertEqual(result.overdue_owing_cents, 22000)
        self.assertEqual(result.unallocated_credit_cents, 12000)
        self.assertEqual(result.net_owing_cents, 10000)


class ManagementCommandTests(DjangoStoreBaseTestCase):
    def test_family_balance(self):
        self.pay(self.enrolment)
        out = StringIO()

        call_command('family_balance', str(self.family.id), '--as-of', '2025-01-20', stdout=out)

        output = out.getvalue()
        self.assertIn('Nguyen family as of 2025-01-20', output)
        self.assertIn('Net owing:            $0.00', output)

    def test_seed_billing(self):
        call_command('seed_billing', families=2, seed=7, stdout=StringIO())

        self.assertEqual(Family.objects.exclude(pk=self.family.pk).count(), 2)
        self.assertTrue(BillingPlan.objects.filter(billing_type=BillingPlan.TYPE_PER_CLASS).exists())
        self.assertTrue(Enrolment.objects.exclude(pk=self.enrolment.pk).exists())
