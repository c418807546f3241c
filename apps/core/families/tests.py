from django.core.exceptions import ValidationError
from django.test import TestCase

from .models import Family, Student


class FamilyModelTests(TestCase):
    def test_name_is_trimmed_and_required(self):
        family = Family(name='  Nguyen family  ')
        family.full_clean()
        self.assertEqual(family.name, 'Nguyen family')

        with self.assertRaises(ValidationError):
            Family(name='   ').full_clean()

    def test_students_are_scoped_to_their_family(self):
        nguyen = Family.objects.create(name='Nguyen family')
        other = Family.objects.create(name='Other family')
        lan = Student.objects.create(family=nguyen, first_name='Lan', last_name='Nguyen')
        Student.objects.create(family=other, first_name='Sam')

        self.assertEqual(list(Student.objects.for_family(nguyen)), [lan])
        self.assertEqual(lan.full_name, 'Lan Nguyen')
        self.assertEqual(str(lan), 'Lan Nguyen (Nguyen family)')
