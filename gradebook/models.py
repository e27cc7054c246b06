from django.conf import settings
from django.db import models
from django.core.validators import MinValueValidator
from django.core.exceptions import ValidationError
from decimal import Decimal
from academics.models import Subject
from students.models import Student
from core.models import AcademicYear, Term


class Exam(models.Model):
    """An examination sitting (e.g., Midterm, End of Term) within an academic year"""
    class ExamType(models.TextChoices):
        QUIZ = 'quiz', 'Quiz'
        TEST = 'test', 'Test'
        MIDTERM = 'midterm', 'Midterm'
        FINAL = 'final', 'Final'
        ASSIGNMENT = 'assignment', 'Assignment'
        PROJECT = 'project', 'Project'

    name = models.CharField(max_length=100, help_text='e.g., Midterm, End of Term Examination')
    exam_type = models.CharField(
        max_length=20,
        choices=ExamType.choices,
        default=ExamType.TEST
    )
    academic_year = models.ForeignKey(
        AcademicYear,
        on_delete=models.PROTECT,
        related_name='exams'
    )
    term = models.ForeignKey(
        Term,
        on_delete=models.PROTECT,
        related_name='exams',
        null=True,
        blank=True
    )
    max_score = models.DecimalField(
        max_digits=6,
        decimal_places=2,
        default=Decimal('100.00'),
        validators=[MinValueValidator(Decimal('1'))],
        help_text='Highest score a student can obtain per subject'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-academic_year__start_date', 'name']
        verbose_name = 'Exam'
        verbose_name_plural = 'Exams'

    def __str__(self):
        return f"{self.name} ({self.academic_year})"


class Mark(models.Model):
    """A student's score for one subject in one exam"""
    exam = models.ForeignKey(
        Exam,
        on_delete=models.CASCADE,
        related_name='marks',
        db_index=True
    )
    student = models.ForeignKey(
        Student,
        on_delete=models.CASCADE,
        related_name='marks',
        db_index=True
    )
    subject = models.ForeignKey(
        Subject,
        on_delete=models.CASCADE,
        related_name='marks'
    )
    score = models.DecimalField(
        max_digits=6,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0'))],
        help_text='Score obtained, bounded by the exam max score'
    )
    entered_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='entered_marks'
    )
    entered_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.student} - {self.subject}: {self.score}/{self.exam.max_score}"

    def clean(self):
        """Validate that the score stays within 0..max_score"""
        if self.score is not None and self.score > self.exam.max_score:
            raise ValidationError(
                f'Score ({self.score}) cannot exceed the exam max score ({self.exam.max_score})'
            )

    class Meta:
        ordering = ['exam', 'student', 'subject']
        verbose_name = 'Mark'
        verbose_name_plural = 'Marks'
        constraints = [
            models.UniqueConstraint(
                fields=['exam', 'student', 'subject'],
                name='unique_mark_per_exam_student_subject'
            ),
            models.CheckConstraint(
                condition=models.Q(score__gte=0),
                name='mark_score_non_negative'
            ),
        ]
        indexes = [
            models.Index(fields=['exam', 'student'], name='mark_exam_student_idx'),
        ]
