from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q, Sum

from apps.core.enrolments.models import BillingPlan, Enrolment
from apps.core.families.models import Family
from apps.core.utils.managers import FamilyManager
from apps.core.utils.models import FinancialRecordModel


class Invoice(FinancialRecordModel):
    STATUS_DRAFT = 'DRAFT'
    STATUS_SENT = 'SENT'
    STATUS_PARTIALLY_PAID = 'PARTIALLY_PAID'
    STATUS_PAID = 'PAID'
    STATUS_OVERDUE = 'OVERDUE'
    STATUS_VOID = 'VOID'
    STATUS_CHOICES = (
        (STATUS_DRAFT, 'Draft'),
        (STATUS_SENT, 'Sent'),
        (STATUS_PARTIALLY_PAID, 'Partially paid'),
        (STATUS_PAID, 'Paid'),
        (STATUS_OVERDUE, 'Overdue'),
        (STATUS_VOID, 'Void'),
    )
    OPEN_STATUSES = (STATUS_DRAFT, STATUS_SENT, STATUS_PARTIALLY_PAID, STATUS_OVERDUE)

    family = models.ForeignKey(
        Family,
        on_delete=models.PROTECT,
        related_name='invoices',
    )
    objects = FamilyManager()

    enrolment = models.ForeignKey(
        Enrolment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='invoices',
    )
    amount_cents = models.PositiveIntegerField()
    amount_paid_cents = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_DRAFT)
    issued_at = models.DateTimeField(null=True, blank=True)
    due_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    coverage_start = models.DateField(null=True, blank=True)
    coverage_end = models.DateField(null=True, blank=True)
    credits_purchased = models.PositiveIntegerField(null=True, blank=True)
    sessions_purchased = models.PositiveIntegerField(null=True, blank=True)
    entitlements_applied_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-issued_at', '-id']
        indexes = [
            models.Index(fields=['family', 'status']),
            models.Index(fields=['enrolment', 'status']),
        ]

    def clean(self):
        super().clean()
        if self.amount_paid_cents is not None and self.amount_cents is not None:
            if self.amount_paid_cents > self.amount_cents:
                raise ValidationError({'amount_paid_cents': 'Amount paid cannot exceed the invoice amount.'})
        if self.coverage_start and self.coverage_end and self.coverage_end < self.coverage_start:
            raise ValidationError({'coverage_end': 'Coverage end cannot be before coverage start.'})

    @property
    def is_open(self):
        return self.status in self.OPEN_STATUSES

    def __str__(self):
        return f"Invoice #{self.pk} ({self.get_status_display()}) {self.amount_cents}c"


class InvoiceLineItem(FinancialRecordModel):
    KIND_ENROLMENT = 'ENROLMENT'
    KIND_PRODUCT = 'PRODUCT'
    KIND_DISCOUNT = 'DISCOUNT'
    KIND_ADJUSTMENT = 'ADJUSTMENT'
    KIND_CHOICES = (
        (KIND_ENROLMENT, 'Enrolment'),
        (KIND_PRODUCT, 'Product'),
        (KIND_DISCOUNT, 'Discount'),
        (KIND_ADJUSTMENT, 'Adjustment'),
    )

    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='line_items',
    )
    kind = models.CharField(max_length=20, choices=KIND_CHOICES, default=KIND_ENROLMENT)
    description = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1)
    unit_price_cents = models.IntegerField()
    amount_cents = models.IntegerField()
    enrolment = models.ForeignKey(
        Enrolment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='invoice_line_items',
    )
    plan = models.ForeignKey(
        BillingPlan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='invoice_line_items',
    )

    class Meta:
        ordering = ['invoice', 'id']

    def __str__(self):
        return f"{self.description} x{self.quantity}"


class Payment(FinancialRecordModel):
    STATUS_COMPLETED = 'COMPLETED'
    STATUS_VOID = 'VOID'
    STATUS_CHOICES = (
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_VOID, 'Void'),
    )

    family = models.ForeignKey(
        Family,
        on_delete=models.PROTECT,
        related_name='payments',
    )
    objects = FamilyManager()

    amount_cents = models.PositiveIntegerField()
    paid_at = models.DateTimeField()
    method = models.CharField(max_length=40, blank=True)
    note = models.CharField(max_length=255, blank=True)
    idempotency_key = models.CharField(max_length=120, null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_COMPLETED)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-paid_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['family', 'idempotency_key'],
                condition=Q(idempotency_key__isnull=False),
                name='unique_payment_idempotency_key_per_family',
            ),
            models.CheckConstraint(
                condition=Q(amount_cents__gt=0),
                name='payment_amount_positive',
            ),
        ]
        indexes = [
            models.Index(fields=['family', 'paid_at']),
        ]

    def __str__(self):
        return f"Payment #{self.pk} {self.amount_cents}c ({self.family_id})"


class PaymentAllocation(FinancialRecordModel):
    payment = models.ForeignKey(
        Payment,
        on_delete=models.PROTECT,
        related_name='allocations',
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='allocations',
    )
    amount_cents = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['id']
        indexes = [
            models.Index(fields=['invoice']),
            models.Index(fields=['payment']),
        ]

    def clean(self):
        super().clean()
        if not self.amount_cents or self.amount_cents <= 0:
            raise ValidationError({'amount_cents': 'Allocation amount must be greater than zero.'})
        if not (self.payment_id and self.invoice_id):
            return
        if self.payment.family_id != self.invoice.family_id:
            raise ValidationError('Payment and invoice must belong to the same family.')

        others = PaymentAllocation.objects.exclude(pk=self.pk)
        payment_total = others.filter(payment_id=self.payment_id).aggregate(total=Sum('amount_cents'))['total'] or 0
        if payment_total + self.amount_cents > self.payment.amount_cents:
            raise ValidationError('Allocations cannot exceed the payment amount.')

        invoice_total = others.filter(invoice_id=self.invoice_id).aggregate(total=Sum('amount_cents'))['total'] or 0
        if invoice_total + self.amount_cents > self.invoice.amount_cents:
            raise ValidationError('Allocations cannot exceed the invoice amount.')

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.payment_id} -> {self.invoice_id}: {self.amount_cents}c"
