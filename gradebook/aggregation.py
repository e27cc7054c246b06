"""
Joins raw marks to students and subjects for one student or one class.
"""
import logging
from decimal import Decimal

from .repositories import coerce_id
from .results import ResultEntry

logger = logging.getLogger(__name__)


def result_sort_key(entry):
    return (entry.student.last_name, entry.student.first_name, entry.student.id, entry.subject.id)


class ResultsAggregator:
    """
    Produces flat ResultEntry lists from the mark store.

    Read-only. Identifiers are validated up front; an unknown or malformed
    exam, class or student raises NotFound, an empty result set does not.
    """

    def __init__(self, marks, students, exams, subjects, classes):
        self.marks = marks
        self.students = students
        self.exams = exams
        self.subjects = subjects
        self.classes = classes

    def student_results(self, student_id, exam_id):
        """All marks for one student in one exam."""
        exam, student = self.student_for_exam(student_id, exam_id)
        return self.results_for_student(exam, student)

    def student_for_exam(self, student_id, exam_id):
        """
        Resolve the exam and the student as they stood in the exam's academic year.

        Returns:
            tuple: (ExamRecord, StudentRecord)
        """
        exam = self.exams.get(coerce_id('Exam', exam_id))
        student = self.students.get(
            coerce_id('Student', student_id),
            academic_year_id=exam.academic_year_id,
        )
        return exam, student

    def results_for_student(self, exam, student):
        marks = self.marks.find(exam.id, student_id=student.id)
        return self._join(marks, {student.id: student})

    def class_results(self, class_id, exam_id):
        """All marks in one exam for the students belonging to a class."""
        exam, klass, roster = self.class_roster(class_id, exam_id)
        return self.results_for_class(exam, klass.id, roster)

    def results_for_class(self, exam, class_id, roster):
        """Marks for an already resolved exam, class id and roster."""
        marks = self.marks.find(exam.id, class_id=class_id)
        return self._join(marks, {student.id: student for student in roster})

    def class_roster(self, class_id, exam_id):
        """
        Resolve the exam, the class and its students.

        Returns:
            tuple: (ExamRecord, ClassRecord, list of StudentRecord)
        """
        exam = self.exams.get(coerce_id('Exam', exam_id))
        klass = self.classes.get(coerce_id('Class', class_id))
        roster = self.students.list_by_class(klass.id, academic_year_id=exam.academic_year_id)
        return exam, klass, roster

    def _join(self, marks, students_by_id):
        if not marks:
            return []

        subject_ids = {mark.subject_id for mark in marks}
        subjects_by_id = {subject.id: subject for subject in self.subjects.list(ids=subject_ids)}

        entries = []
        skipped = 0
        for mark in marks:
            student = students_by_id.get(mark.student_id)
            subject = subjects_by_id.get(mark.subject_id)
            if student is None or subject is None:
                skipped += 1
                continue
            entries.append(ResultEntry(
                student=student,
                subject=subject,
                score=Decimal(str(mark.score)),
            ))

        if skipped:
            logger.debug(f"Skipped {skipped} marks with no matching student or subject")

        entries.sort(key=result_sort_key)
        return entries
