from datetime import date

from django.test import TestCase
from django.core.cache import cache
from django.db import IntegrityError

from core.models import AcademicYear, Term, SchoolSettings


class AcademicYearModelTests(TestCase):
    """Tests for the AcademicYear model."""

    def test_create_academic_year(self):
        ay = AcademicYear.objects.create(
            name='2024/2025 Academic Year',
            start_date=date(2024, 9, 1),
            end_date=date(2025, 7, 31),
        )
        self.assertEqual(str(ay), '2024/2025 Academic Year')

    def test_latest_year_first(self):
        older = AcademicYear.objects.create(name='2023/2024', start_date=date(2023, 9, 1), end_date=date(2024, 7, 31))
        newer = AcademicYear.objects.create(name='2024/2025', start_date=date(2024, 9, 1), end_date=date(2025, 7, 31))
        self.assertEqual(list(AcademicYear.objects.all()), [newer, older])


class TermModelTests(TestCase):
    """Tests for the Term model."""

    def setUp(self):
        self.ay = AcademicYear.objects.create(
            name='2024/2025',
            start_date=date(2024, 9, 1),
            end_date=date(2025, 7, 31),
        )

    def _create_term(self, **kwargs):
        defaults = {
            'academic_year': self.ay,
            'name': 'First Term',
            'term_number': 1,
            'start_date': date(2024, 9, 1),
            'end_date': date(2024, 12, 20),
        }
        defaults.update(kwargs)
        return Term.objects.create(**defaults)

    def test_create_term(self):
        term = self._create_term()
        self.assertEqual(str(term), 'First Term - 2024/2025')

    def test_unique_together_academic_year_term_number(self):
        self._create_term(term_number=1)
        with self.assertRaises(IntegrityError):
            self._create_term(name='Another First Term', term_number=1)


class SchoolSettingsModelTests(TestCase):
    """Tests for the SchoolSettings singleton model."""

    def setUp(self):
        cache.clear()

    def test_load_creates_if_not_exists(self):
        settings = SchoolSettings.load()
        self.assertIsNotNone(settings)
        self.assertEqual(SchoolSettings.objects.count(), 1)

    def test_singleton_pk_is_always_1(self):
        settings = SchoolSettings(display_name='Accra Academy')
        settings.save()
        self.assertEqual(settings.pk, 1)
        SchoolSettings(display_name='Renamed').save()
        self.assertEqual(SchoolSettings.objects.count(), 1)

    def test_save_invalidates_cache(self):
        SchoolSettings.load()
        SchoolSettings(display_name='Accra Academy').save()
        self.assertEqual(SchoolSettings.load().display_name, 'Accra Academy')
