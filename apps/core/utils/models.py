from django.core.exceptions import ValidationError
from django.db import models


class FinancialRecordModel(models.Model):
    class Meta:
        abstract = True

    def delete(self, *args, **kwargs):
        raise ValidationError('Financial records cannot be deleted. Use a void or reversal workflow.')


class LedgerRecordModel(FinancialRecordModel):
    """Append-only row: created once, never edited."""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if self.pk and not self._state.adding:
            raise ValidationError('Ledger rows are append-only. Record a new event instead.')
        super().save(*args, **kwargs)
