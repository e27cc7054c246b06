from django.test import TestCase
from django.db import IntegrityError

from academics.models import Class, Subject


class ClassModelTests(TestCase):
    """Tests for class name generation."""

    def test_primary_name(self):
        klass = Class.objects.create(level_type=Class.LevelType.PRIMARY, level_number=6, section='A')
        self.assertEqual(klass.name, 'B6-A')

    def test_jhs_name_continues_basic_numbering(self):
        klass = Class.objects.create(level_type=Class.LevelType.JHS, level_number=2, section='B')
        self.assertEqual(klass.name, 'B8-B')

    def test_kg_and_shs_names(self):
        kg = Class.objects.create(level_type=Class.LevelType.KG, level_number=1, section='A')
        shs = Class.objects.create(level_type=Class.LevelType.SHS, level_number=3, section='C')
        self.assertEqual(kg.name, 'KG1-A')
        self.assertEqual(shs.name, 'SHS3-C')

    def test_unique_level_and_section(self):
        Class.objects.create(level_type=Class.LevelType.PRIMARY, level_number=6, section='A')
        with self.assertRaises(IntegrityError):
            Class.objects.create(level_type=Class.LevelType.PRIMARY, level_number=6, section='A')


class SubjectModelTests(TestCase):

    def test_core_subjects_listed_first(self):
        Subject.objects.create(name='French', is_core=False)
        Subject.objects.create(name='Mathematics', is_core=True)
        names = list(Subject.objects.values_list('name', flat=True))
        self.assertEqual(names, ['Mathematics', 'French'])
