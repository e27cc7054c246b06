from datetime import date

from django.test import TestCase
from django.db import IntegrityError

from academics.models import Class
from core.models import AcademicYear
from students.models import Student, Enrollment


class StudentModelTests(TestCase):

    def test_full_name_includes_other_names(self):
        student = Student(first_name='Kofi', last_name='Mensah', other_names='Yaw')
        self.assertEqual(student.full_name, 'Kofi Yaw Mensah')

    def test_full_name_without_other_names(self):
        student = Student(first_name='Ama', last_name='Owusu')
        self.assertEqual(student.full_name, 'Ama Owusu')

    def test_admission_number_is_unique(self):
        Student.objects.create(first_name='Ama', last_name='Owusu', admission_number='STU-001')
        with self.assertRaises(IntegrityError):
            Student.objects.create(first_name='Kofi', last_name='Mensah', admission_number='STU-001')


class EnrollmentModelTests(TestCase):

    def setUp(self):
        self.year = AcademicYear.objects.create(
            name='2024/2025',
            start_date=date(2024, 9, 1),
            end_date=date(2025, 7, 31),
        )
        self.klass = Class.objects.create(level_type=Class.LevelType.PRIMARY, level_number=6, section='A')
        self.student = Student.objects.create(
            first_name='Ama', last_name='Owusu', admission_number='STU-001',
        )

    def test_one_enrollment_per_academic_year(self):
        Enrollment.objects.create(student=self.student, academic_year=self.year, class_assigned=self.klass)
        with self.assertRaises(IntegrityError):
            Enrollment.objects.create(student=self.student, academic_year=self.year, class_assigned=self.klass)

    def test_str(self):
        enrollment = Enrollment.objects.create(
            student=self.student, academic_year=self.year, class_assigned=self.klass,
        )
        self.assertEqual(str(enrollment), 'Ama Owusu - B6-A (2024/2025)')
