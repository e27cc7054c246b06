"""
Entry points used by views, Celery tasks and management commands.
"""
import logging

from . import config
from .aggregation import ResultsAggregator
from .analytics import AnalyticsEngine
from .archive import BulkReportArchiver
from .export import ExportFormatter
from .rendering import HtmlTemplateRenderer, ReportRenderer, WeasyPrintTemplateRenderer
from .repositories import (
    DjangoClassRepository, DjangoExamRepository, DjangoMarkRepository,
    DjangoStudentDirectory, DjangoSubjectRepository,
)

logger = logging.getLogger(__name__)


def get_template_renderer(report_format=None):
    """Template renderer for GRADEBOOK_REPORT_FORMAT ('pdf' or 'html')."""
    report_format = report_format or config.REPORT_FORMAT
    if report_format == 'html':
        return HtmlTemplateRenderer()
    if report_format == 'pdf':
        return WeasyPrintTemplateRenderer()
    raise ValueError(f"Unknown report format: {report_format}")


def get_school_name():
    """School name for report headers, falling back to GRADEBOOK_DEFAULT_SCHOOL_NAME."""
    from core.models import SchoolSettings
    school_settings = SchoolSettings.load()
    return school_settings.display_name or config.DEFAULT_SCHOOL_NAME


class ReportCardService:
    """
    Computes class analytics and produces report cards and exports.

    Every call reads the mark store afresh; nothing is cached between calls.
    """

    def __init__(self, aggregator, template_renderer=None, school_name=None,
                 max_workers=None, render_timeout=None, failure_policy=None):
        self.aggregator = aggregator
        self.analytics = AnalyticsEngine(aggregator)
        self.template_renderer = template_renderer or get_template_renderer()
        self.school_name = school_name
        self.max_workers = max_workers
        self.render_timeout = render_timeout
        self.failure_policy = failure_policy
        self.formatter = ExportFormatter()

    @classmethod
    def from_settings(cls, **kwargs):
        """Build a service backed by the Django ORM collaborators."""
        membership = kwargs.pop('membership', None)
        aggregator = ResultsAggregator(
            marks=DjangoMarkRepository(membership),
            students=DjangoStudentDirectory(membership),
            exams=DjangoExamRepository(),
            subjects=DjangoSubjectRepository(),
            classes=DjangoClassRepository(),
        )
        return cls(aggregator, **kwargs)

    def _report_renderer(self):
        return ReportRenderer(self.template_renderer, self.school_name or get_school_name())

    @property
    def content_type(self):
        return self.template_renderer.content_type

    @property
    def extension(self):
        return self.template_renderer.extension

    def compute_class_analytics(self, class_id, exam_id, pass_mark=None, limit=None):
        return self.analytics.compute(class_id, exam_id, pass_mark=pass_mark, limit=limit)

    def generate_student_report(self, student_id, exam_id, template_id=None):
        """
        Render one student's report card.

        The student's position is computed against the class they belong to
        for the exam; a student without a class is reported unranked.
        """
        exam, student = self.aggregator.student_for_exam(student_id, exam_id)
        results = self.aggregator.results_for_student(exam, student)

        position = None
        total_students = 0
        if student.class_id is not None:
            roster = self.aggregator.students.list_by_class(
                student.class_id, academic_year_id=exam.academic_year_id,
            )
            class_results = self.aggregator.results_for_class(exam, student.class_id, roster)
            positions = self.analytics.rank_positions(class_results)
            position = positions.get(student.id)
            total_students = len(positions)

        document = self._report_renderer().render(
            student, results, exam,
            position=position,
            total_students=total_students,
            template_id=template_id,
        )
        logger.info(f"Generated report card for {student.full_name}, exam {exam.name}")
        return document

    def generate_class_report_bundle(self, class_id, exam_id, fileobj=None, cancel_event=None,
                                     template_id=None, failure_policy=None, progress=None):
        archiver = BulkReportArchiver(
            self.aggregator,
            self._report_renderer(),
            max_workers=self.max_workers,
            render_timeout=self.render_timeout,
            failure_policy=self.failure_policy,
        )
        return archiver.build(
            class_id, exam_id,
            fileobj=fileobj,
            cancel_event=cancel_event,
            template_id=template_id,
            failure_policy=failure_policy,
            progress=progress,
        )

    def export_analytics_csv(self, class_id, exam_id, pass_mark=None):
        analytics = self.compute_class_analytics(class_id, exam_id, pass_mark=pass_mark)
        return self.formatter.to_csv(analytics)

    def export_analytics_xlsx(self, class_id, exam_id, pass_mark=None):
        analytics = self.compute_class_analytics(class_id, exam_id, pass_mark=pass_mark)
        return self.formatter.to_xlsx(analytics)
