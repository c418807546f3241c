from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.families.models import Student
from apps.core.schedule.models import ClassTemplate, Level
from apps.core.utils.managers import FamilyManager
from apps.core.utils.models import LedgerRecordModel


class BillingPlan(models.Model):
    TYPE_PER_WEEK = 'PER_WEEK'
    TYPE_PER_CLASS = 'PER_CLASS'
    BILLING_TYPE_CHOICES = (
        (TYPE_PER_WEEK, 'Per week'),
        (TYPE_PER_CLASS, 'Per class block'),
    )

    PRICING_FIELDS = (
        'billing_type',
        'price_cents',
        'duration_weeks',
        'sessions_per_week',
        'block_class_count',
    )

    name = models.CharField(max_length=120)
    level = models.ForeignKey(
        Level,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='billing_plans',
    )
    billing_type = models.CharField(max_length=20, choices=BILLING_TYPE_CHOICES)
    price_cents = models.PositiveIntegerField()
    duration_weeks = models.PositiveIntegerField(null=True, blank=True)
    sessions_per_week = models.PositiveIntegerField(null=True, blank=True)
    block_class_count = models.PositiveIntegerField(null=True, blank=True)
    is_saturday_only = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name', 'id']
        indexes = [
            models.Index(fields=['billing_type', 'is_active']),
        ]

    def clean(self):
        super().clean()
        if self.billing_type == self.TYPE_PER_WEEK and not self.duration_weeks:
            raise ValidationError({'duration_weeks': 'Weekly plans require a duration in weeks.'})
        if self.billing_type == self.TYPE_PER_CLASS and not self.block_class_count:
            raise ValidationError({'block_class_count': 'Block plans require a class count per block.'})

        if not self.pk:
            return

        previous = BillingPlan.objects.filter(pk=self.pk).first()
        if not previous or not previous.invoice_line_items.exists():
            return

        if any(getattr(previous, field) != getattr(self, field) for field in self.PRICING_FIELDS):
            raise ValidationError('Plan pricing cannot be edited after it has been invoiced. Create a new plan instead.')

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.name} ({self.get_billing_type_display()})"


class Enrolment(models.Model):
    STATUS_ACTIVE = 'ACTIVE'
    STATUS_CHANGEOVER = 'CHANGEOVER'
    STATUS_PAUSED = 'PAUSED'
    STATUS_ENDED = 'ENDED'
    STATUS_CANCELLED = 'CANCELLED'
    STATUS_CHOICES = (
        (STATUS_ACTIVE, 'Active'),
        (STATUS_CHANGEOVER, 'Changeover'),
        (STATUS_PAUSED, 'Paused'),
        (STATUS_ENDED, 'Ended'),
        (STATUS_CANCELLED, 'Cancelled'),
    )
    PAYABLE_STATUSES = (STATUS_ACTIVE, STATUS_CHANGEOVER)

    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='enrolments',
    )
    objects = FamilyManager('student__family')

    plan = models.ForeignKey(
        BillingPlan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='enrolments',
    )
    template = models.ForeignKey(
        ClassTemplate,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='primary_enrolments',
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)
    start_date = models.DateField()
    end_date = models.DateField(null=True, blank=True)
    paid_through_date = models.DateField(null=True, blank=True)
    paid_through_date_base = models.DateField(null=True, blank=True)
    credits_remaining = models.IntegerField(default=0)
    is_billing_primary = models.BooleanField(default=True)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['start_date', 'id']
        indexes = [
            models.Index(fields=['student', 'status']),
            models.Index(fields=['status', 'is_billing_primary']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_date__isnull=True) | Q(end_date__gte=models.F('start_date')),
                name='enrolment_end_on_or_after_start',
            ),
        ]

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValidationError({'end_date': 'End date cannot be before start date.'})

    def __str__(self):
        return f"{self.student} - {self.plan.name if self.plan_id else 'No plan'}"


class EnrolmentClassAssignment(models.Model):
    enrolment = models.ForeignKey(
        Enrolment,
        on_delete=models.CASCADE,
        related_name='class_assignments',
    )
    template = models.ForeignKey(
        ClassTemplate,
        on_delete=models.CASCADE,
        related_name='enrolment_assignments',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['template__day_of_week', 'template__start_time', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['enrolment', 'template'],
                name='unique_template_per_enrolment',
            ),
        ]

    def __str__(self):
        return f"{self.enrolment_id} -> {self.template}"


class EnrolmentCreditEvent(LedgerRecordModel):
    TYPE_PURCHASE = 'PURCHASE'
    TYPE_CONSUME = 'CONSUME'
    TYPE_ADJUSTMENT = 'ADJUSTMENT'
    TYPE_CANCELLATION_CREDIT = 'CANCELLATION_CREDIT'
    TYPE_CHOICES = (
        (TYPE_PURCHASE, 'Purchase'),
        (TYPE_CONSUME, 'Consume'),
        (TYPE_ADJUSTMENT, 'Adjustment'),
        (TYPE_CANCELLATION_CREDIT, 'Cancellation credit'),
    )

    enrolment = models.ForeignKey(
        Enrolment,
        on_delete=models.PROTECT,
        related_name='credit_events',
    )
    event_type = models.CharField(max_length=30, choices=TYPE_CHOICES)
    credits_delta = models.IntegerField()
    occurred_on = models.DateField()
    note = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['occurred_on', 'id']
        indexes = [
            models.Index(fields=['enrolment', 'occurred_on']),
        ]

    def __str__(self):
        return f"{self.event_type} {self.credits_delta:+d} ({self.enrolment_id})"


class EnrolmentCoverageAudit(LedgerRecordModel):
    REASON_INVOICE_APPLIED = 'INVOICE_APPLIED'
    REASON_HOLIDAY_CHANGED = 'HOLIDAY_CHANGED'
    REASON_CANCELLATION_CREATED = 'CANCELLATION_CREATED'
    REASON_MANUAL = 'MANUAL'
    REASON_CHOICES = (
        (REASON_INVOICE_APPLIED, 'Invoice applied'),
        (REASON_HOLIDAY_CHANGED, 'Holiday changed'),
        (REASON_CANCELLATION_CREATED, 'Cancellation created'),
        (REASON_MANUAL, 'Manual recalculation'),
    )

    enrolment = models.ForeignKey(
        Enrolment,
        on_delete=models.PROTECT,
        related_name='coverage_audits',
    )
    reason = models.CharField(max_length=30, choices=REASON_CHOICES)
    previous_paid_through_date = models.DateField(null=True, blank=True)
    next_paid_through_date = models.DateField(null=True, blank=True)
    credits_remaining = models.IntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.reason} {self.previous_paid_through_date} -> {self.next_paid_through_date}"
