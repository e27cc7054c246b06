"""
Read-only collaborators the results engine consumes.

Each collaborator is an abstract base class with a Django ORM implementation.
The engine only ever sees the plain records from ``gradebook.results``.
"""
from abc import ABC, abstractmethod
from typing import List

from django.db.models import F

from . import config
from .exceptions import NotFound
from .results import (
    ClassRecord, ExamRecord, MarkRecord, StudentRecord, SubjectRecord,
)


def coerce_id(kind, value):
    """
    Normalize an identifier to a positive int.

    Raises:
        NotFound: if the value is not a well-formed id
    """
    if isinstance(value, bool):
        raise NotFound(kind, value)
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise NotFound(kind, value)
    if parsed <= 0:
        raise NotFound(kind, value)
    return parsed


class MarkRepository(ABC):

    @abstractmethod
    def find(self, exam_id, class_id=None, student_id=None, subject_id=None) -> List[MarkRecord]:
        """Return marks of one exam, optionally narrowed by class, student or subject."""


class StudentDirectory(ABC):

    @abstractmethod
    def list_by_class(self, class_id, academic_year_id=None) -> List[StudentRecord]:
        """Return the class roster ordered by last name, first name, id."""

    @abstractmethod
    def get(self, student_id, academic_year_id=None) -> StudentRecord:
        """Return one student. Raises NotFound."""


class ExamRepository(ABC):

    @abstractmethod
    def get(self, exam_id) -> ExamRecord:
        """Raises NotFound."""


class SubjectRepository(ABC):

    @abstractmethod
    def get(self, subject_id) -> SubjectRecord:
        """Raises NotFound."""

    @abstractmethod
    def list(self, ids=None) -> List[SubjectRecord]:
        """Return subjects (all, or those in ``ids``) ordered by id."""


class ClassRepository(ABC):

    @abstractmethod
    def get(self, class_id) -> ClassRecord:
        """Raises NotFound."""


# =============================================================================
# Django ORM implementations
# =============================================================================

def _student_record(student, klass):
    return StudentRecord(
        id=student.pk,
        first_name=student.first_name,
        last_name=student.last_name,
        other_names=student.other_names,
        guardian_name=student.guardian_name,
        admission_number=student.admission_number,
        class_id=klass.pk if klass else None,
        class_name=klass.name if klass else '',
    )


class DjangoMarkRepository(MarkRepository):

    def __init__(self, membership=None):
        self.membership = membership or config.CLASS_MEMBERSHIP

    def find(self, exam_id, class_id=None, student_id=None, subject_id=None):
        from .models import Mark

        marks = Mark.objects.filter(exam_id=exam_id).select_related('entered_by')

        if class_id is not None:
            if self.membership == config.MEMBERSHIP_ENROLLMENT:
                marks = marks.filter(
                    student__enrollments__class_assigned_id=class_id,
                    student__enrollments__academic_year_id=F('exam__academic_year_id'),
                )
            else:
                marks = marks.filter(student__current_class_id=class_id)
        if student_id is not None:
            marks = marks.filter(student_id=student_id)
        if subject_id is not None:
            marks = marks.filter(subject_id=subject_id)

        return [
            MarkRecord(
                exam_id=mark.exam_id,
                student_id=mark.student_id,
                subject_id=mark.subject_id,
                score=mark.score,
                entered_by=mark.entered_by.get_username() if mark.entered_by else None,
                entered_at=mark.entered_at,
            )
            for mark in marks.order_by('student_id', 'subject_id')
        ]


class DjangoStudentDirectory(StudentDirectory):

    def __init__(self, membership=None):
        self.membership = membership or config.CLASS_MEMBERSHIP

    def _by_enrollment(self, academic_year_id):
        return self.membership == config.MEMBERSHIP_ENROLLMENT and academic_year_id is not None

    def list_by_class(self, class_id, academic_year_id=None):
        from students.models import Student
        from academics.models import Class

        if self._by_enrollment(academic_year_id):
            klass = Class.objects.filter(pk=class_id).first()
            students = Student.objects.filter(
                enrollments__class_assigned_id=class_id,
                enrollments__academic_year_id=academic_year_id,
            )
            return [
                _student_record(student, klass)
                for student in students.order_by('last_name', 'first_name', 'pk')
            ]

        students = Student.objects.filter(
            current_class_id=class_id
        ).select_related('current_class').order_by('last_name', 'first_name', 'pk')
        return [_student_record(student, student.current_class) for student in students]

    def get(self, student_id, academic_year_id=None):
        from students.models import Student, Enrollment

        try:
            student = Student.objects.select_related('current_class').get(pk=student_id)
        except Student.DoesNotExist:
            raise NotFound('Student', student_id)

        if self._by_enrollment(academic_year_id):
            enrollment = Enrollment.objects.filter(
                student=student,
                academic_year_id=academic_year_id,
            ).select_related('class_assigned').first()
            if enrollment:
                return _student_record(student, enrollment.class_assigned)
            return _student_record(student, None)

        return _student_record(student, student.current_class)


class DjangoExamRepository(ExamRepository):

    def get(self, exam_id):
        from .models import Exam

        try:
            exam = Exam.objects.select_related('academic_year', 'term').get(pk=exam_id)
        except Exam.DoesNotExist:
            raise NotFound('Exam', exam_id)

        return ExamRecord(
            id=exam.pk,
            name=exam.name,
            academic_year_id=exam.academic_year_id,
            academic_year_name=exam.academic_year.name,
            term_id=exam.term_id,
            term_name=exam.term.name if exam.term else '',
            max_score=exam.max_score,
        )


class DjangoSubjectRepository(SubjectRepository):

    def get(self, subject_id):
        from academics.models import Subject

        try:
            subject = Subject.objects.get(pk=subject_id)
        except Subject.DoesNotExist:
            raise NotFound('Subject', subject_id)
        return SubjectRecord(id=subject.pk, name=subject.name, short_name=subject.short_name)

    def list(self, ids=None):
        from academics.models import Subject

        subjects = Subject.objects.all()
        if ids is not None:
            subjects = subjects.filter(pk__in=list(ids))
        return [
            SubjectRecord(id=subject.pk, name=subject.name, short_name=subject.short_name)
            for subject in subjects.order_by('pk')
        ]


class DjangoClassRepository(ClassRepository):

    def get(self, class_id):
        from academics.models import Class

        try:
            klass = Class.objects.get(pk=class_id)
        except Class.DoesNotExist:
            raise NotFound('Class', class_id)
        return ClassRecord(id=klass.pk, name=klass.name)
