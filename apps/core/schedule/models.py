from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q


DAY_CHOICES = (
    (0, 'Monday'),
    (1, 'Tuesday'),
    (2, 'Wednesday'),
    (3, 'Thursday'),
    (4, 'Friday'),
    (5, 'Saturday'),
    (6, 'Sunday'),
)
SATURDAY = 5


class Level(models.Model):
    name = models.CharField(max_length=120, unique=True)
    display_order = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['display_order', 'name']

    def __str__(self):
        return self.name


class ClassTemplate(models.Model):
    """A recurring weekly class slot."""

    name = models.CharField(max_length=120)
    level = models.ForeignKey(
        Level,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='class_templates',
    )
    day_of_week = models.PositiveSmallIntegerField(choices=DAY_CHOICES, null=True, blank=True)
    start_time = models.TimeField(null=True, blank=True)
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    capacity = models.PositiveIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['day_of_week', 'start_time', 'name', 'id']
        indexes = [
            models.Index(fields=['day_of_week', 'is_active']),
            models.Index(fields=['level', 'is_active']),
        ]

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValidationError({'end_date': 'End date cannot be before start date.'})

    def __str__(self):
        day = self.get_day_of_week_display() if self.day_of_week is not None else 'Unscheduled'
        return f"{self.name} ({day})"


class Holiday(models.Model):
    """Closed date range. Unscoped holidays apply to every template."""

    name = models.CharField(max_length=255)
    start_date = models.DateField()
    end_date = models.DateField()
    template = models.ForeignKey(
        ClassTemplate,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='holidays',
    )
    level = models.ForeignKey(
        Level,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='holidays',
    )
    note = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['start_date', 'id']
        indexes = [
            models.Index(fields=['start_date', 'end_date']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(end_date__gte=models.F('start_date')),
                name='holiday_end_on_or_after_start',
            ),
        ]

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValidationError({'end_date': 'Holiday end date cannot be before its start date.'})

    def __str__(self):
        return f"{self.name} ({self.start_date} to {self.end_date})"


class ClassCancellation(models.Model):
    """Staff cancelled a single occurrence of a template."""

    template = models.ForeignKey(
        ClassTemplate,
        on_delete=models.CASCADE,
        related_name='cancellations',
    )
    date = models.DateField()
    reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['date', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['template', 'date'],
                name='unique_cancellation_per_template_date',
            ),
        ]

    def clean(self):
        super().clean()
        if self.template_id and self.date and self.template.day_of_week is not None:
            if self.date.weekday() != self.template.day_of_week:
                raise ValidationError({'date': 'Cancellation date does not fall on the class weekday.'})

    def __str__(self):
        return f"{self.template.name} cancelled on {self.date}"
