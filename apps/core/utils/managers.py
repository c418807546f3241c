from django.db import models


class FamilyQuerySet(models.QuerySet):
    def for_family(self, family, lookup='family'):
        return self.filter(**{lookup: family})


class FamilyManager(models.Manager):
    def __init__(self, family_lookup='family'):
        super().__init__()
        self.family_lookup = family_lookup

    def get_queryset(self):
        return FamilyQuerySet(self.model, using=self._db)

    def for_family(self, family):
        return self.get_queryset().for_family(family, lookup=self.family_lookup)
