"""
Report card rendering.

ReportRenderer builds the template context for one student and hands it to a
TemplateRenderer. HtmlTemplateRenderer produces HTML bytes through the Django
template engine; WeasyPrintTemplateRenderer turns that HTML into a PDF.
Nothing here touches the database, so renders can run on worker threads.
"""
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from io import BytesIO

from django.utils import timezone

from . import config
from .exceptions import RenderFailure

logger = logging.getLogger(__name__)


class TemplateRenderer(ABC):
    """Turns a template id and a context dict into document bytes."""

    content_type = 'application/octet-stream'
    extension = ''

    @abstractmethod
    def render(self, template_id, context) -> bytes:
        pass


class HtmlTemplateRenderer(TemplateRenderer):
    content_type = 'text/html'
    extension = '.html'

    def render(self, template_id, context):
        from django.template.loader import render_to_string
        return render_to_string(template_id, context).encode('utf-8')


class WeasyPrintTemplateRenderer(HtmlTemplateRenderer):
    content_type = 'application/pdf'
    extension = '.pdf'

    def __init__(self, base_url=None):
        self.base_url = base_url

    def render(self, template_id, context):
        try:
            from weasyprint import HTML
        except ImportError:
            logger.error("WeasyPrint not installed. Install with: pip install weasyprint")
            raise

        html_string = super().render(template_id, context).decode('utf-8')

        base_url = self.base_url
        if base_url is None:
            from django.conf import settings
            base_url = str(settings.BASE_DIR)

        html = HTML(string=html_string, base_url=base_url)
        pdf_buffer = BytesIO()
        html.write_pdf(pdf_buffer)
        return pdf_buffer.getvalue()


class ReportRenderer:
    """
    Renders one student's exam results into a report card document.

    Args:
        template_renderer: TemplateRenderer producing the bytes
        school_name: Name printed in the report header
    """

    def __init__(self, template_renderer, school_name=None):
        self.template_renderer = template_renderer
        self.school_name = school_name or config.DEFAULT_SCHOOL_NAME

    @property
    def content_type(self):
        return self.template_renderer.content_type

    @property
    def extension(self):
        return self.template_renderer.extension

    def build_context(self, student, results, exam, position=None, total_students=0, class_name=None):
        subjects = [
            {'name': entry.subject.name, 'score': entry.score}
            for entry in results
        ]
        total_score = sum((entry.score for entry in results), Decimal('0'))
        average = None
        if results:
            average = (total_score / len(results)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

        return {
            'school_name': self.school_name,
            'guardian_name': student.guardian_name or config.GUARDIAN_FALLBACK,
            'student_name': student.full_name,
            'admission_number': student.admission_number,
            'class_name': class_name if class_name is not None else student.class_name,
            'exam_name': exam.name,
            'academic_year': exam.academic_year_name,
            'term': exam.term_name,
            'max_score': exam.max_score,
            'subjects': subjects,
            'total_score': total_score,
            'average': average,
            'position': position,
            'total_students': total_students,
            'generated_at': timezone.now(),
        }

    def render(self, student, results, exam, position=None, total_students=0,
               template_id=None, class_name=None):
        """
        Render a report card.

        Returns:
            bytes: the document

        Raises:
            RenderFailure: if the template cannot be loaded or filled
        """
        template_id = template_id or config.REPORT_TEMPLATE
        context = self.build_context(student, results, exam, position, total_students, class_name)
        try:
            return self.template_renderer.render(template_id, context)
        except RenderFailure:
            raise
        except Exception as e:
            logger.error(f"Report rendering failed for student {student.id}: {e}")
            raise RenderFailure(student.id, str(e) or e.__class__.__name__) from e
