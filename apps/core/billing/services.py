from __future__ import annotations

import logging

from django.utils import timezone

from apps.core.enrolments.models import BillingPlan, EnrolmentCoverageAudit, EnrolmentCreditEvent
from apps.core.enrolments.services import (
    assert_plan_matches_templates,
    assert_weekly_plan_selection,
    calculate_block_pricing,
    limit_weekly_templates,
    resolve_block_coverage,
    resolve_block_length,
    resolve_sessions_per_week,
    resolve_weekly_coverage,
    validate_custom_block_length,
)
from apps.core.schedule.services import build_occurrence_schedule, consume_occurrences_for_credits
from apps.core.utils import dates

from .exceptions import ConcurrencyConflict, OwnershipError, ScheduleResolutionError, ValidationError
from .models import Invoice, InvoiceLineItem
from .stores import get_default_store


logger = logging.getLogger(__name__)

RECALCULATED_WEEKLY_REASONS = (
    EnrolmentCoverageAudit.REASON_HOLIDAY_CHANGED,
    EnrolmentCoverageAudit.REASON_CANCELLATION_CREATED,
    EnrolmentCoverageAudit.REASON_MANUAL,
)


def format_cents(cents: int) -> str:
    sign = '-' if cents < 0 else ''
    whole, part = divmod(abs(cents), 100)
    return f'{sign}${whole:,}.{part:02d}'


def build_custom_block_note(*, total_classes, coverage_start, coverage_end, per_class_cents) -> str:
    note = f'Custom block: {total_classes} classes @ {format_cents(per_class_cents)}/class'
    if coverage_start and coverage_end:
        note += f' ({dates.day_key(coverage_start)} to {dates.day_key(coverage_end)})'
    return note


def _validate_amount(amount_cents):
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError('Payment amount must be a whole number of cents.')
    if amount_cents <= 0:
        raise ValidationError('Payment amount must be positive.')


def _same_family(left, right) -> bool:
    return str(left) == str(right)


def _scope_ids(enrolment):
    template_ids = [template.template_id for template in enrolment.templates]
    level_ids = {template.level_id for template in enrolment.templates}
    level_ids.add(enrolment.level_id)
    return template_ids, [level_id for level_id in level_ids if level_id is not None]


def _schedule_exclusions(store, enrolment, start_date=None):
    template_ids, level_ids = _scope_ids(enrolment)
    holidays = store.list_holidays(template_ids=template_ids, level_ids=level_ids, start_date=start_date)
    cancellations = store.list_cancellations(template_ids=template_ids, start_date=start_date)
    return holidays, cancellations


def _resolve_payment_plan(store, enrolment, plan_id):
    plan = enrolment.plan
    if plan_id is None:
        return plan

    if plan.billing_type != BillingPlan.TYPE_PER_WEEK:
        raise ValidationError('Only weekly plans can be changed for payment.')
    selected = store.get_plan(plan_id)
    if selected is None:
        raise ValidationError('Selected plan could not be found.')
    assert_weekly_plan_selection(plan=selected, current_level_id=plan.level_id, templates=enrolment.templates)
    return selected


def _apply_weekly_purchase(store, enrolment, plan, *, today):
    if not any(template.day_of_week is not None for template in enrolment.templates):
        raise ScheduleResolutionError('Class template missing for enrolment.')
    assert_plan_matches_templates(plan, enrolment.templates)

    holidays, cancellations = _schedule_exclusions(store, enrolment)
    window = resolve_weekly_coverage(
        enrolment_start=enrolment.start_date,
        enrolment_end=enrolment.end_date,
        paid_through=enrolment.paid_through_date,
        today=today,
        duration_weeks=plan.duration_weeks,
        sessions_per_week=plan.sessions_per_week,
        templates=enrolment.templates,
        holidays=holidays,
        cancellations=cancellations,
    )

    store.save_enrolment_state(
        enrolment.id,
        expected_version=enrolment.version,
        paid_through_date=dates.latest_day(window.coverage_end, enrolment.paid_through_date),
        paid_through_date_base=dates.latest_day(window.coverage_end_base, enrolment.paid_through_date_base),
    )
    return window, None


def _apply_block_purchase(store, enrolment, plan, *, credits, paid_at):
    holidays, cancellations = _schedule_exclusions(store, enrolment)
    window = resolve_block_coverage(
        enrolment_start=enrolment.start_date,
        enrolment_end=enrolment.end_date,
        paid_through=enrolment.paid_through_date,
        credits=credits,
        templates=enrolment.templates,
        holidays=holidays,
        cancellations=cancellations,
    )

    store.add_credit_event(
        enrolment_id=enrolment.id,
        event_type=EnrolmentCreditEvent.TYPE_PURCHASE,
        credits_delta=credits,
        occurred_on=dates.civil_day(paid_at),
        note='Payment recorded',
    )
    store.save_enrolment_state(
        enrolment.id,
        expected_version=enrolment.version,
        credits_remaining=store.sum_credit_events(enrolment.id),
        paid_through_date=dates.latest_day(window.coverage_end, enrolment.paid_through_date),
    )
    return window, credits


def recalculate_enrolment_coverage(enrolment_id, reason, *, store=None):
    """
    Re-derive an enrolment's cached billing state and record an audit row.

    The credit balance is always re-summed from the ledger. For weekly plans
    a holiday or cancellation change replays the paid weekly receipts against
    the current closures; the paid-through date only ever moves forward here.
    """
    store = store or get_default_store()
    with store.atomic():
        enrolment = store.lock_enrolment(enrolment_id)
        if enrolment is None:
            raise ValidationError('Enrolment not found.')

        previous = enrolment.paid_through_date
        balance = store.sum_credit_events(enrolment.id)
        changes = {}
        if balance != enrolment.credits_remaining:
            changes['credits_remaining'] = balance

        plan = enrolment.plan
        if (
            plan is not None
            and plan.billing_type == BillingPlan.TYPE_PER_WEEK
            and reason in RECALCULATED_WEEKLY_REASONS
        ):
            proposed = _rewalk_weekly_entitlement(store, enrolment)
            next_paid_through = dates.latest_day(proposed, previous)
            if next_paid_through != previous:
                changes['paid_through_date'] = next_paid_through

        if changes:
            store.save_enrolment_state(enrolment.id, expected_version=enrolment.version, **changes)

        next_paid_through = changes.get('paid_through_date', previous)
        store.add_coverage_audit(
            enrolment_id=enrolment.id,
            reason=reason,
            previous_paid_through_date=previous,
            next_paid_through_date=next_paid_through,
            credits_remaining=balance,
        )

    logger.info(
        'Recalculated coverage for enrolment %s (%s): %s -> %s, credits=%s',
        enrolment_id,
        reason,
        previous,
        next_paid_through,
        balance,
    )
    return next_paid_through


def _rewalk_weekly_entitlement(store, enrolment):
    """
    Replay every paid weekly receipt against the current closures.

    Each receipt restarts at its own coverage start, or just after the
    previous receipt's replayed end when that is later, and consumes exactly
    the sessions it bought. Unpaid gaps between receipts are never counted.
    """
    purchases = store.list_weekly_purchases(enrolment.id)
    if not purchases:
        return None

    holidays, cancellations = _schedule_exclusions(store, enrolment, start_date=purchases[0].coverage_start)
    paid_through = None
    for purchase in purchases:
        cadence = resolve_sessions_per_week(purchase.sessions_per_week or enrolment.plan.sessions_per_week)
        slots = limit_weekly_templates(enrolment.templates, cadence)
        if not slots or purchase.sessions <= 0:
            continue

        start = dates.latest_day(
            purchase.coverage_start,
            dates.add_days(paid_through, 1) if paid_through else None,
        )
        occurrences = build_occurrence_schedule(
            start_date=start,
            end_date=enrolment.end_date,
            templates=slots,
            holidays=holidays,
            cancellations=cancellations,
            occurrences_needed=purchase.sessions,
            sessions_per_week=cadence,
        )
        consumed = consume_occurrences_for_credits(occurrences, purchase.sessions)
        if consumed.paid_through is None:
            break
        paid_through = consumed.paid_through
    return paid_through


def record_payment(
    *,
    family_id,
    amount_cents,
    paid_at=None,
    method='',
    note='',
    enrolment_id=None,
    idempotency_key=None,
    custom_block_length=None,
    plan_id=None,
    as_of_date=None,
    store=None,
):
    """
    Record a family payment and, when it is for an enrolment, apply the
    entitlement it buys.

    Returns ``{'payment': PaymentRecord, 'receipt_invoice_id': id or None}``.
    A repeated ``idempotency_key`` for the same family returns the first
    result without writing anything.
    """
    _validate_amount(amount_cents)
    store = store or get_default_store()
    paid_at = paid_at or timezone.now()
    today = dates.civil_day(as_of_date) if as_of_date else dates.today()
    method = (method or '').strip()
    note = (note or '').strip()
    idempotency_key = (idempotency_key or '').strip() or None

    with store.atomic():
        if idempotency_key:
            existing = store.find_payment_by_idempotency_key(family_id, idempotency_key)
            if existing is not None:
                logger.info('Idempotent replay of payment %s for family %s', existing.id, family_id)
                return {
                    'payment': existing,
                    'receipt_invoice_id': store.first_allocation_invoice_id(existing.id),
                }

        if enrolment_id is None:
            payment = store.create_payment(
                family_id=family_id,
                amount_cents=amount_cents,
                paid_at=paid_at,
                method=method,
                note=note,
                idempotency_key=idempotency_key,
            )
            logger.info('Recorded unallocated payment %s of %sc for family %s', payment.id, amount_cents, family_id)
            return {'payment': payment, 'receipt_invoice_id': None}

        enrolment = store.lock_enrolment(enrolment_id)
        if enrolment is None:
            raise ValidationError('Enrolment not found.')
        if not _same_family(enrolment.family_id, family_id):
            raise OwnershipError('Enrolment does not belong to family.')
        if enrolment.plan is None:
            raise ValidationError('Enrolment plan missing.')

        plan = _resolve_payment_plan(store, enrolment, plan_id)
        charge_cents = amount_cents
        custom_note = None
        sessions_purchased = None

        if plan.billing_type == BillingPlan.TYPE_PER_WEEK:
            if custom_block_length is not None:
                raise ValidationError('Custom block length is only allowed for block-based plans.')
            if plan_id is not None:
                charge_cents = plan.price_cents
            window, credits_purchased = _apply_weekly_purchase(store, enrolment, plan, today=today)
            sessions_purchased = window.sessions
        elif plan.billing_type == BillingPlan.TYPE_PER_CLASS:
            block_length = resolve_block_length(plan.block_class_count)
            custom_length = validate_custom_block_length(custom_block_length, block_length)
            pricing = calculate_block_pricing(
                price_cents=plan.price_cents,
                block_length=block_length,
                custom_block_length=custom_length,
            )
            if custom_length is not None:
                charge_cents = pricing.total_cents
            window, credits_purchased = _apply_block_purchase(
                store,
                enrolment,
                plan,
                credits=custom_length or block_length,
                paid_at=paid_at,
            )
            if custom_length is not None and custom_length != block_length:
                custom_note = build_custom_block_note(
                    total_classes=custom_length,
                    coverage_start=window.coverage_start,
                    coverage_end=window.coverage_end,
                    per_class_cents=pricing.per_class_cents,
                )
        else:
            raise ValidationError(f'Unsupported billing type: {plan.billing_type}.')

        payment = store.create_payment(
            family_id=family_id,
            amount_cents=charge_cents,
            paid_at=paid_at,
            method=method,
            note=note,
            idempotency_key=idempotency_key,
        )

        receipt = store.create_invoice(
            family_id=family_id,
            enrolment_id=enrolment.id,
            amount_cents=charge_cents,
            amount_paid_cents=charge_cents,
            status=Invoice.STATUS_PAID,
            issued_at=paid_at,
            due_at=paid_at,
            paid_at=paid_at,
            coverage_start=window.coverage_start,
            coverage_end=window.coverage_end,
            credits_purchased=credits_purchased,
            sessions_purchased=sessions_purchased,
            entitlements_applied_at=timezone.now(),
        )
        description = f'{plan.name} · {custom_note}' if custom_note else plan.name
        store.create_line_item(
            invoice_id=receipt.id,
            kind=InvoiceLineItem.KIND_ENROLMENT,
            description=description[:255],
            quantity=1,
            unit_price_cents=charge_cents,
            amount_cents=charge_cents,
            enrolment_id=enrolment.id,
            plan_id=plan.id,
        )
        store.create_allocation(payment_id=payment.id, invoice_id=receipt.id, amount_cents=charge_cents)

        recalculate_enrolment_coverage(
            enrolment.id,
            EnrolmentCoverageAudit.REASON_INVOICE_APPLIED,
            store=store,
        )

    logger.info(
        'Recorded payment %s of %sc for enrolment %s (receipt invoice %s)',
        payment.id,
        charge_cents,
        enrolment.id,
        receipt.id,
    )
    return {'payment': payment, 'receipt_invoice_id': receipt.id}


def record_payment_with_retry(*, attempts=3, **kwargs):
    """Run ``record_payment``, retrying the whole call on ``ConcurrencyConflict``."""
    for attempt in range(1, attempts + 1):
        try:
            return record_payment(**kwargs)
        except ConcurrencyConflict:
            if attempt >= attempts:
                raise
            logger.warning(
                'Concurrent change while recording payment for family %s (attempt %s of %s); retrying',
                kwargs.get('family_id'),
                attempt,
                attempts,
            )
