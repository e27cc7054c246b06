import csv
import io
import os
import sys
import tempfile
import threading
import time
import types
import zipfile
from datetime import date
from decimal import Decimal
from unittest import mock

import openpyxl
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, transaction
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from academics.models import Class, Subject
from core.models import AcademicYear, Term
from students.models import Student, Enrollment

from . import config
from .aggregation import ResultsAggregator
from .analytics import (
    AnalyticsEngine, calculate_bottom_performers, calculate_class_average,
    calculate_pass_rate, calculate_subject_stats, calculate_top_performers,
    rank_students, summarize,
)
from .archive import BulkReportArchiver, build_entry_names
from .exceptions import (
    BulkJobCancelled, BulkJobFailure, ExportFailure, NotFound, RenderFailure,
)
from .export import ExportFormatter, analytics_rows, format_number
from .models import Exam, Mark
from .rendering import (
    HtmlTemplateRenderer, ReportRenderer, TemplateRenderer, WeasyPrintTemplateRenderer,
)
from .repositories import (
    ClassRepository, DjangoMarkRepository, DjangoStudentDirectory, ExamRepository,
    MarkRepository, StudentDirectory, SubjectRepository, coerce_id,
)
from .results import (
    ClassAnalytics, ClassRecord, ExamRecord, MarkRecord, Performer, StudentRecord,
    SubjectRecord, SubjectStat,
)
from .services import ReportCardService
from .tasks import cleanup_export_zips, export_class_reports_zip


User = get_user_model()


# =============================================================================
# In-memory collaborators
# =============================================================================

class FakeMarks(MarkRepository):

    def __init__(self, marks, students):
        self.marks = marks
        self.class_of = {student.id: student.class_id for student in students}

    def find(self, exam_id, class_id=None, student_id=None, subject_id=None):
        return [
            mark for mark in self.marks
            if mark.exam_id == exam_id
            and (class_id is None or self.class_of.get(mark.student_id) == class_id)
            and (student_id is None or mark.student_id == student_id)
            and (subject_id is None or mark.subject_id == subject_id)
        ]


class FakeStudents(StudentDirectory):

    def __init__(self, students):
        self.students = {student.id: student for student in students}

    def list_by_class(self, class_id, academic_year_id=None):
        roster = [s for s in self.students.values() if s.class_id == class_id]
        return sorted(roster, key=lambda s: (s.last_name, s.first_name, s.id))

    def get(self, student_id, academic_year_id=None):
        if student_id not in self.students:
            raise NotFound('Student', student_id)
        return self.students[student_id]


class FakeExams(ExamRepository):

    def __init__(self, exams):
        self.exams = {exam.id: exam for exam in exams}

    def get(self, exam_id):
        if exam_id not in self.exams:
            raise NotFound('Exam', exam_id)
        return self.exams[exam_id]


class FakeSubjects(SubjectRepository):

    def __init__(self, subjects):
        self.subjects = {subject.id: subject for subject in subjects}

    def get(self, subject_id):
        if subject_id not in self.subjects:
            raise NotFound('Subject', subject_id)
        return self.subjects[subject_id]

    def list(self, ids=None):
        return [
            self.subjects[key] for key in sorted(self.subjects)
            if ids is None or key in ids
        ]


class FakeClasses(ClassRepository):

    def __init__(self, classes):
        self.classes = {klass.id: klass for klass in classes}

    def get(self, class_id):
        if class_id not in self.classes:
            raise NotFound('Class', class_id)
        return self.classes[class_id]


class StubTemplateRenderer(TemplateRenderer):
    """Writes name|position|total so tests can read back what was rendered."""

    content_type = 'application/pdf'
    extension = '.pdf'

    def __init__(self, fail_for=(), block_for=(), release=None):
        self.fail_for = set(fail_for)
        self.block_for = set(block_for)
        self.release = release or threading.Event()

    def render(self, template_id, context):
        name = context['student_name']
        if name in self.fail_for:
            raise ValueError('template exploded')
        if name in self.block_for:
            self.release.wait(5)
        return f"{name}|{context['position']}|{context['total_students']}".encode('utf-8')


MATH = SubjectRecord(id=1, name='Mathematics', short_name='MATH')
ENGLISH = SubjectRecord(id=2, name='English Language', short_name='ENG')
SCIENCE = SubjectRecord(id=3, name='Integrated Science', short_name='SCI')
MIDTERM = ExamRecord(
    id=1, name='Midterm', academic_year_id=1, academic_year_name='2024/2025',
    term_id=1, term_name='First Term',
)
CLASS_6A = ClassRecord(id=1, name='6A')


def make_student(id, first_name, last_name, class_id=1, **kwargs):
    return StudentRecord(
        id=id, first_name=first_name, last_name=last_name,
        class_id=class_id, class_name='6A' if class_id == 1 else '', **kwargs
    )


def make_aggregator(students, scores, subjects=(MATH, ENGLISH, SCIENCE)):
    """
    Args:
        scores: {student_id: {subject: score}}
    """
    marks = [
        MarkRecord(exam_id=MIDTERM.id, student_id=student_id, subject_id=subject.id, score=Decimal(str(score)))
        for student_id, by_subject in scores.items()
        for subject, score in by_subject.items()
    ]
    return ResultsAggregator(
        marks=FakeMarks(marks, students),
        students=FakeStudents(students),
        exams=FakeExams([MIDTERM]),
        subjects=FakeSubjects(subjects),
        classes=FakeClasses([CLASS_6A]),
    )


class MidtermScenarioMixin:
    """Class 6A sat the Midterm: A={Math:80, English:70}, B={Math:90, English:60}."""

    def setUp(self):
        super().setUp()
        self.ama = make_student(1, 'Ama', 'Owusu')
        self.kofi = make_student(2, 'Kofi', 'Mensah')
        self.students = [self.ama, self.kofi]
        self.aggregator = make_aggregator(self.students, {
            1: {MATH: 80, ENGLISH: 70},
            2: {MATH: 90, ENGLISH: 60},
        })
        self.results = self.aggregator.class_results(1, 1)


# =============================================================================
# Aggregation
# =============================================================================

class ResultsAggregatorTests(MidtermScenarioMixin, SimpleTestCase):

    def test_class_results_joins_subjects(self):
        self.assertEqual(len(self.results), 4)
        subject_names = {entry.subject.name for entry in self.results}
        self.assertEqual(subject_names, {'Mathematics', 'English Language'})

    def test_class_results_ordered_by_student_name(self):
        # Mensah sorts before Owusu
        self.assertEqual([entry.student.id for entry in self.results], [2, 2, 1, 1])

    def test_student_results(self):
        results = self.aggregator.student_results(1, 1)
        self.assertEqual([(e.subject.id, e.score) for e in results], [(1, Decimal('80')), (2, Decimal('70'))])

    def test_student_for_exam(self):
        exam, student = self.aggregator.student_for_exam('2', 1)
        self.assertEqual(exam, MIDTERM)
        self.assertEqual(student, self.kofi)

    def test_results_for_class_uses_given_roster(self):
        results = self.aggregator.results_for_class(MIDTERM, 1, [self.ama])
        self.assertEqual({e.student.id for e in results}, {1})

    def test_student_without_marks_is_empty_not_error(self):
        students = self.students + [make_student(3, 'Yaw', 'Boateng')]
        aggregator = make_aggregator(students, {1: {MATH: 80}})
        self.assertEqual(aggregator.student_results(3, 1), [])

    def test_class_results_excludes_other_classes(self):
        students = self.students + [make_student(3, 'Yaw', 'Boateng', class_id=2)]
        aggregator = make_aggregator(students, {1: {MATH: 80}, 3: {MATH: 99}})
        self.assertEqual({e.student.id for e in aggregator.class_results(1, 1)}, {1})

    def test_unknown_ids_raise_not_found(self):
        with self.assertRaises(NotFound):
            self.aggregator.class_results(99, 1)
        with self.assertRaises(NotFound):
            self.aggregator.class_results(1, 99)
        with self.assertRaises(NotFound):
            self.aggregator.student_results(99, 1)

    def test_malformed_ids_raise_not_found(self):
        with self.assertRaises(NotFound):
            self.aggregator.class_results('6A', 1)
        with self.assertRaises(NotFound):
            self.aggregator.class_results(1, -1)

    def test_coerce_id(self):
        self.assertEqual(coerce_id('Class', '12'), 12)
        self.assertEqual(coerce_id('Class', 3), 3)
        for bad in (True, 0, '', 'abc', None, 1.5):
            with self.assertRaises(NotFound):
                coerce_id('Class', bad)


# =============================================================================
# Analytics
# =============================================================================

class AnalyticsScenarioTests(MidtermScenarioMixin, SimpleTestCase):

    def test_class_average_divides_by_student_count(self):
        # (80 + 70 + 90 + 60) / 2 students
        self.assertEqual(calculate_class_average(self.results), Decimal('150.00'))

    def test_subject_pass_rates(self):
        stats = calculate_subject_stats(self.results, pass_mark=50)
        self.assertEqual(
            [(s.subject.name, s.pass_rate, s.sample_size) for s in stats],
            [('Mathematics', Decimal('100.00'), 2), ('English Language', Decimal('100.00'), 2)],
        )
        self.assertEqual(stats[0].average, Decimal('85.00'))
        self.assertEqual(stats[1].average, Decimal('65.00'))

    def test_top_performer_tie_goes_to_lower_student_id(self):
        top = calculate_top_performers(self.results, limit=1)
        self.assertEqual(len(top), 1)
        self.assertEqual(top[0].student.id, 1)
        self.assertEqual(top[0].total_score, Decimal('150'))

    def test_tied_students_share_position(self):
        self.assertEqual([p.position for p in rank_students(self.results)], [1, 1])

    def test_higher_pass_mark(self):
        stats = calculate_subject_stats(self.results, pass_mark=75)
        self.assertEqual([s.pass_rate for s in stats], [Decimal('100.00'), Decimal('0.00')])
        self.assertEqual(calculate_pass_rate(self.results, pass_mark=75), Decimal('0.00'))

    def test_engine_compute(self):
        analytics = AnalyticsEngine(self.aggregator).compute(1, 1)
        self.assertEqual(analytics.class_average, Decimal('150.00'))
        self.assertEqual(analytics.total_students, 2)
        self.assertEqual(analytics.pass_rate, Decimal('100.00'))
        self.assertEqual(analytics.pass_mark, Decimal('50'))
        self.assertEqual(len(analytics.subject_stats), 2)

    def test_engine_subject_pass_rate_and_performers(self):
        engine = AnalyticsEngine(self.aggregator)
        self.assertEqual(len(engine.subject_pass_rate(1, 1)), 2)
        self.assertEqual(engine.top_performers(1, 1, limit=1)[0].student.id, 1)
        self.assertEqual(engine.bottom_performers(1, 1, limit=1)[0].student.id, 1)

    def test_to_dict(self):
        data = AnalyticsEngine(self.aggregator).compute(1, 1, limit=1).to_dict()
        self.assertEqual(data['class_average'], '150.00')
        self.assertEqual(data['top_performers'], [{
            'student_id': 1, 'name': 'Ama Owusu', 'total_score': '150', 'position': 1,
        }])


class AnalyticsEdgeCaseTests(SimpleTestCase):

    def test_empty_results(self):
        self.assertEqual(calculate_class_average([]), Decimal('0'))
        self.assertEqual(calculate_pass_rate([]), Decimal('0'))
        self.assertEqual(calculate_subject_stats([]), [])
        self.assertEqual(calculate_top_performers([]), [])

    def test_class_without_marks(self):
        aggregator = make_aggregator([make_student(1, 'Ama', 'Owusu')], {})
        analytics = AnalyticsEngine(aggregator).compute(1, 1)
        self.assertEqual(analytics.class_average, 0)
        self.assertEqual(analytics.total_students, 0)
        self.assertEqual(analytics.subject_stats, [])
        self.assertEqual(analytics.top_performers, [])
        self.assertEqual(analytics.bottom_performers, [])

    def test_subject_without_marks_is_omitted(self):
        aggregator = make_aggregator([make_student(1, 'Ama', 'Owusu')], {1: {MATH: 40}})
        stats = calculate_subject_stats(aggregator.class_results(1, 1))
        self.assertEqual([s.subject.id for s in stats], [MATH.id])
        self.assertEqual(stats[0].pass_rate, Decimal('0.00'))

    def test_competition_ranking(self):
        students = [make_student(i, f'S{i}', 'Student') for i in range(1, 5)]
        aggregator = make_aggregator(students, {
            1: {MATH: 70}, 2: {MATH: 90}, 3: {MATH: 90}, 4: {MATH: 50},
        })
        ranked = rank_students(aggregator.class_results(1, 1))
        self.assertEqual([(p.student.id, p.position) for p in ranked], [(2, 1), (3, 1), (1, 3), (4, 4)])

    def test_limit_bounds_and_order(self):
        students = [make_student(i, f'S{i}', 'Student') for i in range(1, 6)]
        aggregator = make_aggregator(students, {i: {MATH: 10 * i} for i in range(1, 6)})
        results = aggregator.class_results(1, 1)

        top = calculate_top_performers(results, limit=3)
        self.assertEqual(len(top), 3)
        totals = [p.total_score for p in top]
        self.assertEqual(totals, sorted(totals, reverse=True))

        bottom = calculate_bottom_performers(results, limit=2)
        self.assertEqual([(p.student.id, p.position) for p in bottom], [(1, 5), (2, 4)])

        self.assertEqual(calculate_top_performers(results, limit=0), [])
        self.assertEqual(len(calculate_top_performers(results, limit=50)), 5)

    @override_settings(GRADEBOOK_TOP_PERFORMERS_LIMIT=2, GRADEBOOK_DEFAULT_PASS_MARK=Decimal('60'))
    def test_configured_defaults(self):
        students = [make_student(i, f'S{i}', 'Student') for i in range(1, 4)]
        aggregator = make_aggregator(students, {1: {MATH: 55}, 2: {MATH: 65}, 3: {MATH: 75}})
        analytics = summarize(aggregator.class_results(1, 1), 1, 1)
        self.assertEqual(len(analytics.top_performers), 2)
        self.assertEqual(analytics.pass_mark, Decimal('60'))
        self.assertEqual(analytics.pass_rate, Decimal('66.67'))

    def test_overall_pass_rate_uses_lowest_score(self):
        students = [make_student(1, 'Ama', 'Owusu'), make_student(2, 'Kofi', 'Mensah')]
        aggregator = make_aggregator(students, {
            1: {MATH: 90, ENGLISH: 40},
            2: {MATH: 55, ENGLISH: 60},
        })
        self.assertEqual(calculate_pass_rate(aggregator.class_results(1, 1)), Decimal('50.00'))


# =============================================================================
# Export
# =============================================================================

def make_analytics(performer_name=('John', 'Doe, Jr.'), subject=MATH, **overrides):
    student = StudentRecord(id=5, first_name=performer_name[0], last_name=performer_name[1])
    performer = Performer(student=student, total_score=Decimal('150'), position=1)
    values = {
        'class_id': 1,
        'exam_id': 1,
        'pass_mark': Decimal('50'),
        'class_average': Decimal('150.00'),
        'total_students': 1,
        'pass_rate': Decimal('100.00'),
        'subject_stats': [
            SubjectStat(subject=subject, pass_rate=Decimal('100.00'), sample_size=1, average=Decimal('75.00')),
        ],
        'top_performers': [performer],
        'bottom_performers': [performer],
    }
    values.update(overrides)
    return ClassAnalytics(**values)


class ExportFormatterTests(SimpleTestCase):

    def test_csv_layout(self):
        content = ExportFormatter().to_csv(make_analytics(performer_name=('Ama', 'Owusu')))
        self.assertEqual(content.splitlines(), [
            'Metric,Value',
            'Average,150.00',
            'Pass Rate,100.00',
            'Subject Average (Mathematics),75.00',
            'Top Performer 1,Ama Owusu (150.00)',
            'Bottom Performer 1,Ama Owusu (150.00)',
        ])

    def test_csv_quotes_commas_and_quotes(self):
        subject = SubjectRecord(id=9, name='Maths "Core", Paper 1')
        content = ExportFormatter().to_csv(make_analytics(subject=subject))
        rows = list(csv.reader(io.StringIO(content)))

        self.assertEqual(rows[0], ['Metric', 'Value'])
        self.assertTrue(all(len(row) == 2 for row in rows))
        self.assertIn(['Subject Average (Maths "Core", Paper 1)', '75.00'], rows)
        self.assertIn(['Top Performer 1', 'John Doe, Jr. (150.00)'], rows)

    def test_csv_handles_newlines(self):
        content = ExportFormatter().to_csv(make_analytics(performer_name=('Ama', 'Owusu\nBoateng')))
        rows = list(csv.reader(io.StringIO(content)))
        self.assertIn(['Top Performer 1', 'Ama Owusu\nBoateng (150.00)'], rows)

    def test_unserializable_values(self):
        with self.assertRaises(ExportFailure):
            ExportFormatter().to_csv(make_analytics(class_average='n/a'))
        with self.assertRaises(ExportFailure):
            ExportFormatter().to_csv(make_analytics(pass_rate=float('nan')))
        with self.assertRaises(ExportFailure):
            format_number(True)

    def test_format_number(self):
        self.assertEqual(format_number(Decimal('66.666')), '66.67')
        self.assertEqual(format_number(5), '5.00')

    def test_xlsx_matches_csv_rows(self):
        analytics = make_analytics()
        content = ExportFormatter().to_xlsx(analytics)
        wb = openpyxl.load_workbook(io.BytesIO(content))
        ws = wb.active

        self.assertEqual(ws.title, 'Analytics')
        self.assertEqual((ws['A1'].value, ws['B1'].value), ('Metric', 'Value'))
        rows = [tuple(row) for row in ws.iter_rows(min_row=2, values_only=True)]
        self.assertEqual(rows, analytics_rows(analytics))


# =============================================================================
# Rendering
# =============================================================================

class ReportRendererTests(MidtermScenarioMixin, SimpleTestCase):

    def _render(self, template_renderer, student=None, **kwargs):
        student = student or self.ama
        results = self.aggregator.student_results(student.id, 1)
        return ReportRenderer(template_renderer, 'Accra Academy').render(
            student, results, MIDTERM, position=1, total_students=2, **kwargs
        )

    def test_context(self):
        results = self.aggregator.student_results(1, 1)
        context = ReportRenderer(StubTemplateRenderer(), 'Accra Academy').build_context(
            self.ama, results, MIDTERM, position=1, total_students=2,
        )
        self.assertEqual(context['school_name'], 'Accra Academy')
        self.assertEqual(context['guardian_name'], 'Parent/Guardian')
        self.assertEqual(context['student_name'], 'Ama Owusu')
        self.assertEqual(context['class_name'], '6A')
        self.assertEqual(context['exam_name'], 'Midterm')
        self.assertEqual(context['average'], Decimal('75.00'))
        self.assertEqual(context['total_score'], Decimal('150'))
        self.assertEqual(
            [(s['name'], s['score']) for s in context['subjects']],
            [('Mathematics', Decimal('80')), ('English Language', Decimal('70'))],
        )

    def test_guardian_name_used_when_present(self):
        student = make_student(1, 'Ama', 'Owusu', guardian_name='Mrs. Owusu')
        context = ReportRenderer(StubTemplateRenderer()).build_context(student, [], MIDTERM)
        self.assertEqual(context['guardian_name'], 'Mrs. Owusu')
        self.assertIsNone(context['average'])
        self.assertEqual(context['school_name'], 'School')

    def test_html_report_card(self):
        html = self._render(HtmlTemplateRenderer()).decode('utf-8')
        self.assertIn('Accra Academy', html)
        self.assertIn('Dear Parent/Guardian', html)
        self.assertIn('Ama Owusu', html)
        self.assertIn('Mathematics', html)
        self.assertIn('Midterm', html)
        self.assertIn('1 out of 2', html)

    def test_missing_template_raises_render_failure(self):
        with self.assertRaises(RenderFailure) as ctx:
            self._render(HtmlTemplateRenderer(), template_id='gradebook/does_not_exist.html')
        self.assertEqual(ctx.exception.student_id, 1)

    def test_pdf_through_weasyprint(self):
        written = {}

        class FakeHTML:
            def __init__(self, string, base_url=None):
                written['html'] = string
                written['base_url'] = base_url

            def write_pdf(self, target):
                target.write(b'%PDF-1.7 fake')

        fake_weasyprint = types.ModuleType('weasyprint')
        fake_weasyprint.HTML = FakeHTML
        with mock.patch.dict(sys.modules, {'weasyprint': fake_weasyprint}):
            document = self._render(WeasyPrintTemplateRenderer(base_url='/srv/school'))

        self.assertEqual(document, b'%PDF-1.7 fake')
        self.assertIn('Dear Parent/Guardian', written['html'])
        self.assertEqual(written['base_url'], '/srv/school')


# =============================================================================
# Bulk report bundles
# =============================================================================

class EntryNameTests(SimpleTestCase):

    def test_unique_names_keep_base(self):
        names = build_entry_names([make_student(1, 'Ama', 'Owusu')], '.pdf')
        self.assertEqual(names, {1: 'Ama_Owusu_report.pdf'})

    def test_duplicate_names_get_student_id(self):
        roster = [
            make_student(3, 'John', 'Smith'),
            make_student(7, 'John', 'Smith'),
            make_student(9, 'john', 'SMITH'),
        ]
        names = build_entry_names(roster, '.pdf')
        self.assertEqual(names, {
            3: 'John_Smith_report_3.pdf',
            7: 'John_Smith_report_7.pdf',
            9: 'john_SMITH_report_9.pdf',
        })

    def test_unsafe_characters_replaced(self):
        names = build_entry_names([make_student(1, 'Ama/..', 'Owusu Boateng')], '.pdf')
        self.assertEqual(names[1], 'Ama_.._Owusu_Boateng_report.pdf')
        self.assertNotIn('/', names[1])


class BulkReportArchiverTests(SimpleTestCase):

    def setUp(self):
        self.ama = make_student(1, 'Ama', 'Owusu')
        self.kofi = make_student(2, 'Kofi', 'Mensah')
        self.yaw = make_student(3, 'Yaw', 'Boateng')
        self.aggregator = make_aggregator([self.ama, self.kofi, self.yaw], {
            1: {MATH: 80, ENGLISH: 70},
            2: {MATH: 90, ENGLISH: 60},
        })
        self.release = threading.Event()
        self.addCleanup(self.release.set)

    def _archiver(self, template_renderer=None, **kwargs):
        kwargs.setdefault('max_workers', 2)
        kwargs.setdefault('render_timeout', 5)
        renderer = ReportRenderer(template_renderer or StubTemplateRenderer(), 'Accra Academy')
        return BulkReportArchiver(self.aggregator, renderer, **kwargs)

    def test_one_entry_per_student_in_roster_order(self):
        bundle = self._archiver().build(1, 1)

        with zipfile.ZipFile(io.BytesIO(bundle.archive)) as zf:
            self.assertEqual(zf.namelist(), [
                'Yaw_Boateng_report.pdf',
                'Kofi_Mensah_report.pdf',
                'Ama_Owusu_report.pdf',
            ])
            self.assertEqual(zf.read('Ama_Owusu_report.pdf'), b'Ama Owusu|1|2')
            # Yaw has no marks: still reported, unranked
            self.assertEqual(zf.read('Yaw_Boateng_report.pdf'), b'Yaw Boateng|None|2')
        self.assertEqual(bundle.entries, [
            'Yaw_Boateng_report.pdf', 'Kofi_Mensah_report.pdf', 'Ama_Owusu_report.pdf',
        ])
        self.assertFalse(bundle.is_partial)

    def test_same_names_do_not_collide(self):
        twins = [make_student(1, 'John', 'Smith'), make_student(2, 'John', 'Smith')]
        self.aggregator = make_aggregator(twins, {1: {MATH: 50}, 2: {MATH: 60}})
        bundle = self._archiver().build(1, 1)
        with zipfile.ZipFile(io.BytesIO(bundle.archive)) as zf:
            self.assertEqual(len(zf.namelist()), 2)
            self.assertEqual(len(set(zf.namelist())), 2)

    def test_streams_to_file_object(self):
        target = io.BytesIO()
        bundle = self._archiver().build(1, 1, fileobj=target)
        self.assertIsNone(bundle.archive)
        with zipfile.ZipFile(io.BytesIO(target.getvalue())) as zf:
            self.assertEqual(len(zf.namelist()), 3)

    def test_fail_fast_aborts_bundle(self):
        stub = StubTemplateRenderer(fail_for={'Kofi Mensah'})
        with self.assertRaises(BulkJobFailure) as ctx:
            self._archiver(stub).build(1, 1)
        self.assertNotIsInstance(ctx.exception, BulkJobCancelled)
        self.assertEqual([f.student_id for f in ctx.exception.failures], [2])
        self.assertIsInstance(ctx.exception.failures[0], RenderFailure)

    def test_partial_policy_returns_manifest(self):
        stub = StubTemplateRenderer(fail_for={'Kofi Mensah'})
        bundle = self._archiver(stub).build(1, 1, failure_policy=config.PARTIAL)

        self.assertTrue(bundle.is_partial)
        self.assertEqual(bundle.entries, ['Yaw_Boateng_report.pdf', 'Ama_Owusu_report.pdf'])
        self.assertEqual(len(bundle.failures), 1)
        failure = bundle.failures[0]
        self.assertEqual((failure.student_id, failure.student_name), (2, 'Kofi Mensah'))
        self.assertEqual(failure.reason, 'template exploded')
        with zipfile.ZipFile(io.BytesIO(bundle.archive)) as zf:
            self.assertEqual(len(zf.namelist()), 2)

    @override_settings(GRADEBOOK_REPORT_BUNDLE_FAILURE_POLICY='partial')
    def test_configured_policy(self):
        stub = StubTemplateRenderer(fail_for={'Kofi Mensah'})
        bundle = self._archiver(stub).build(1, 1)
        self.assertTrue(bundle.is_partial)

    def test_unknown_policy(self):
        with self.assertRaises(ValueError):
            self._archiver().build(1, 1, failure_policy='best_effort')

    def test_stuck_render_times_out(self):
        stub = StubTemplateRenderer(block_for={'Kofi Mensah'}, release=self.release)
        started = time.monotonic()
        bundle = self._archiver(stub, render_timeout=0.3).build(1, 1, failure_policy=config.PARTIAL)

        self.assertLess(time.monotonic() - started, 4)
        self.assertEqual([f.student_id for f in bundle.failures], [2])
        self.assertEqual(bundle.failures[0].reason, 'timed out after 0.3s')
        self.assertEqual(len(bundle.entries), 2)

    def test_stuck_render_does_not_hold_up_the_rest(self):
        stub = StubTemplateRenderer(block_for={'Yaw Boateng'}, release=self.release)
        bundle = self._archiver(stub, max_workers=1, render_timeout=0.3).build(
            1, 1, failure_policy=config.PARTIAL,
        )
        self.assertEqual([f.student_id for f in bundle.failures], [3])
        self.assertEqual(bundle.entries, ['Kofi_Mensah_report.pdf', 'Ama_Owusu_report.pdf'])

    def test_every_worker_stuck_still_finishes_queue(self):
        stub = StubTemplateRenderer(block_for={'Yaw Boateng', 'Kofi Mensah'}, release=self.release)
        bundle = self._archiver(stub, max_workers=2, render_timeout=0.3).build(
            1, 1, failure_policy=config.PARTIAL,
        )
        self.assertEqual([f.student_id for f in bundle.failures], [3, 2])
        self.assertEqual(bundle.entries, ['Ama_Owusu_report.pdf'])

    def test_stuck_render_fails_fast(self):
        stub = StubTemplateRenderer(block_for={'Kofi Mensah'}, release=self.release)
        with self.assertRaises(BulkJobFailure):
            self._archiver(stub, render_timeout=0.3).build(1, 1)

    def test_cancel_before_start(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(BulkJobCancelled):
            self._archiver().build(1, 1, cancel_event=cancel)

    def test_cancel_stops_dispatching(self):
        cancel = threading.Event()
        calls = []

        def progress(done, total):
            calls.append((done, total))
            cancel.set()

        with self.assertRaises(BulkJobCancelled):
            self._archiver(max_workers=1).build(1, 1, cancel_event=cancel, progress=progress)
        self.assertEqual(calls, [(1, 3)])

    def test_cancel_while_waiting_on_render(self):
        cancel = threading.Event()
        stub = StubTemplateRenderer(block_for={'Yaw Boateng'}, release=self.release)
        threading.Timer(0.2, cancel.set).start()
        with self.assertRaises(BulkJobCancelled):
            self._archiver(stub, render_timeout=30).build(1, 1, cancel_event=cancel)

    def test_progress(self):
        calls = []
        self._archiver().build(1, 1, progress=lambda done, total: calls.append((done, total)))
        self.assertEqual(calls, [(1, 3), (2, 3), (3, 3)])

    def test_unknown_class(self):
        with self.assertRaises(NotFound):
            self._archiver().build(42, 1)


class ReportCardServiceTests(MidtermScenarioMixin, SimpleTestCase):

    def _service(self, **kwargs):
        return ReportCardService(
            self.aggregator,
            template_renderer=StubTemplateRenderer(),
            school_name='Accra Academy',
            **kwargs
        )

    def test_student_report_is_ranked_in_class(self):
        self.assertEqual(self._service().generate_student_report(2, 1), b'Kofi Mensah|1|2')

    def test_student_without_class_is_unranked(self):
        loner = make_student(3, 'Yaw', 'Boateng', class_id=None)
        self.aggregator = make_aggregator(self.students + [loner], {3: {MATH: 70}})
        self.assertEqual(self._service().generate_student_report(3, 1), b'Yaw Boateng|None|0')

    def test_student_report_resolves_exam_and_student_once(self):
        exams = self.aggregator.exams
        students = self.aggregator.students
        with mock.patch.object(exams, 'get', wraps=exams.get) as exam_get, \
                mock.patch.object(students, 'get', wraps=students.get) as student_get:
            self._service().generate_student_report(2, 1)
        exam_get.assert_called_once_with(1)
        student_get.assert_called_once_with(2, academic_year_id=1)

    def test_unknown_student(self):
        with self.assertRaises(NotFound):
            self._service().generate_student_report(99, 1)

    def test_class_bundle(self):
        bundle = self._service(max_workers=1).generate_class_report_bundle(1, 1)
        self.assertEqual(bundle.entries, ['Kofi_Mensah_report.pdf', 'Ama_Owusu_report.pdf'])

    def test_exports(self):
        service = self._service()
        self.assertTrue(service.export_analytics_csv(1, 1).startswith('Metric,Value\nAverage,150.00\n'))
        self.assertTrue(service.export_analytics_xlsx(1, 1).startswith(b'PK'))
        self.assertEqual(service.content_type, 'application/pdf')
        self.assertEqual(service.extension, '.pdf')


# =============================================================================
# Database-backed collaborators
# =============================================================================

class GradebookDataMixin:
    """Midterm results for class B6-A stored through the ORM."""

    @classmethod
    def setUpTestData(cls):
        cls.year = AcademicYear.objects.create(
            name='2024/2025',
            start_date=date(2024, 9, 1),
            end_date=date(2025, 7, 31),
        )
        cls.term = Term.objects.create(
            academic_year=cls.year,
            name='First Term',
            term_number=1,
            start_date=date(2024, 9, 1),
            end_date=date(2024, 12, 20),
        )
        cls.klass = Class.objects.create(level_type=Class.LevelType.PRIMARY, level_number=6, section='A')
        cls.other_class = Class.objects.create(level_type=Class.LevelType.PRIMARY, level_number=6, section='B')
        cls.math = Subject.objects.create(name='Mathematics', short_name='MATH')
        cls.english = Subject.objects.create(name='English Language', short_name='ENG')
        cls.ama = Student.objects.create(
            first_name='Ama', last_name='Owusu', admission_number='STU-001', current_class=cls.klass,
        )
        cls.kofi = Student.objects.create(
            first_name='Kofi', last_name='Mensah', admission_number='STU-002', current_class=cls.klass,
            guardian_name='Mr. Mensah',
        )
        cls.exam = Exam.objects.create(
            name='Midterm', exam_type=Exam.ExamType.MIDTERM, academic_year=cls.year, term=cls.term,
        )
        cls.user = User.objects.create_user(username='teacher', password='pass')
        for student, math, english in ((cls.ama, 80, 70), (cls.kofi, 90, 60)):
            Mark.objects.create(exam=cls.exam, student=student, subject=cls.math, score=Decimal(math), entered_by=cls.user)
            Mark.objects.create(exam=cls.exam, student=student, subject=cls.english, score=Decimal(english), entered_by=cls.user)

    def setUp(self):
        super().setUp()
        cache.clear()


class MarkModelTests(GradebookDataMixin, TestCase):

    def test_duplicate_mark_rejected(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Mark.objects.create(exam=self.exam, student=self.ama, subject=self.math, score=Decimal('10'))

    def test_score_cannot_exceed_max(self):
        mark = Mark(exam=self.exam, student=self.ama, subject=self.math, score=Decimal('101'))
        with self.assertRaises(ValidationError):
            mark.clean()

    def test_negative_score_rejected(self):
        other = Subject.objects.create(name='French', is_core=False)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Mark.objects.create(exam=self.exam, student=self.ama, subject=other, score=Decimal('-1'))


class DjangoRepositoryTests(GradebookDataMixin, TestCase):

    def test_find_marks_for_class(self):
        marks = DjangoMarkRepository().find(self.exam.pk, class_id=self.klass.pk)
        self.assertEqual(len(marks), 4)
        self.assertEqual(marks[0].entered_by, 'teacher')
        self.assertEqual(
            [(m.student_id, m.subject_id) for m in marks],
            sorted((m.student_id, m.subject_id) for m in marks),
        )

    def test_find_marks_narrowed(self):
        marks = DjangoMarkRepository().find(self.exam.pk, student_id=self.ama.pk, subject_id=self.math.pk)
        self.assertEqual([m.score for m in marks], [Decimal('80')])

    def test_roster_order(self):
        roster = DjangoStudentDirectory().list_by_class(self.klass.pk)
        self.assertEqual([s.last_name for s in roster], ['Mensah', 'Owusu'])
        self.assertEqual(roster[0].class_name, 'B6-A')

    def test_unknown_student(self):
        with self.assertRaises(NotFound):
            DjangoStudentDirectory().get(999)

    def test_current_membership_follows_transfers(self):
        Student.objects.filter(pk=self.kofi.pk).update(current_class=self.other_class)
        marks = DjangoMarkRepository().find(self.exam.pk, class_id=self.klass.pk)
        self.assertEqual({m.student_id for m in marks}, {self.ama.pk})

    def test_enrollment_membership_uses_exam_year(self):
        Enrollment.objects.create(student=self.ama, academic_year=self.year, class_assigned=self.klass)
        Enrollment.objects.create(student=self.kofi, academic_year=self.year, class_assigned=self.klass)
        Student.objects.filter(pk=self.kofi.pk).update(current_class=self.other_class)

        mode = config.MEMBERSHIP_ENROLLMENT
        marks = DjangoMarkRepository(mode).find(self.exam.pk, class_id=self.klass.pk)
        self.assertEqual({m.student_id for m in marks}, {self.ama.pk, self.kofi.pk})

        roster = DjangoStudentDirectory(mode).list_by_class(self.klass.pk, academic_year_id=self.year.pk)
        self.assertEqual([s.id for s in roster], [self.kofi.pk, self.ama.pk])
        self.assertTrue(all(s.class_name == 'B6-A' for s in roster))

        kofi = DjangoStudentDirectory(mode).get(self.kofi.pk, academic_year_id=self.year.pk)
        self.assertEqual(kofi.class_id, self.klass.pk)

    def test_service_from_settings(self):
        service = ReportCardService.from_settings(template_renderer=HtmlTemplateRenderer())
        analytics = service.compute_class_analytics(self.klass.pk, self.exam.pk)
        self.assertEqual(analytics.class_average, Decimal('150.00'))
        self.assertEqual(analytics.total_students, 2)
        self.assertEqual(analytics.top_performers[0].student.id, self.ama.pk)


# =============================================================================
# HTTP, Celery and management command surfaces
# =============================================================================

@override_settings(GRADEBOOK_REPORT_FORMAT='html')
class GradebookViewTests(GradebookDataMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.client.force_login(self.user)

    def _url(self, name, *args):
        return reverse(f'gradebook:{name}', args=args or [self.klass.pk, self.exam.pk])

    def test_login_required(self):
        self.client.logout()
        response = self.client.get(self._url('class_analytics'))
        self.assertEqual(response.status_code, 302)

    def test_class_analytics(self):
        response = self.client.get(self._url('class_analytics'), {'limit': '1'})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['class_average'], '150.00')
        self.assertEqual(data['total_students'], 2)
        self.assertEqual(len(data['top_performers']), 1)
        self.assertEqual(data['top_performers'][0]['student_id'], self.ama.pk)
        self.assertEqual(
            [(s['subject'], s['pass_rate'], s['sample_size']) for s in data['subject_stats']],
            [('Mathematics', '100.00', 2), ('English Language', '100.00', 2)],
        )

    def test_class_analytics_bad_params(self):
        self.assertEqual(self.client.get(self._url('class_analytics'), {'pass_mark': 'abc'}).status_code, 400)
        self.assertEqual(self.client.get(self._url('class_analytics'), {'limit': '-1'}).status_code, 400)

    def test_unknown_exam_is_404(self):
        response = self.client.get(self._url('class_analytics', self.klass.pk, 999))
        self.assertEqual(response.status_code, 404)

    def test_post_not_allowed(self):
        self.assertEqual(self.client.post(self._url('class_analytics')).status_code, 405)

    def test_csv_export(self):
        response = self.client.get(self._url('export_analytics_csv'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'text/csv')
        self.assertIn('attachment;', response['Content-Disposition'])
        rows = list(csv.reader(io.StringIO(response.content.decode('utf-8'))))
        self.assertEqual(rows[1], ['Average', '150.00'])

    def test_xlsx_export(self):
        response = self.client.get(self._url('export_analytics_xlsx'))
        self.assertEqual(response.status_code, 200)
        wb = openpyxl.load_workbook(io.BytesIO(response.content))
        self.assertEqual(wb.active['A2'].value, 'Average')

    def test_student_report(self):
        response = self.client.get(self._url('download_student_report', self.kofi.pk, self.exam.pk))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'text/html')
        html = response.content.decode('utf-8')
        self.assertIn('Dear Mr. Mensah', html)
        self.assertIn('1 out of 2', html)

    @override_settings(GRADEBOOK_REPORT_TEMPLATE='gradebook/missing.html')
    def test_student_report_render_failure(self):
        response = self.client.get(self._url('download_student_report', self.kofi.pk, self.exam.pk))
        self.assertEqual(response.status_code, 500)
        self.assertIn('error', response.json())

    def test_class_bundle(self):
        response = self.client.get(self._url('download_class_bundle'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['Content-Type'], 'application/zip')
        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            self.assertEqual(zf.namelist(), ['Kofi_Mensah_report.html', 'Ama_Owusu_report.html'])
        self.assertFalse(response.has_header('X-Report-Failures'))

    @override_settings(GRADEBOOK_REPORT_TEMPLATE='gradebook/missing.html')
    def test_class_bundle_failures(self):
        response = self.client.get(self._url('download_class_bundle'))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(len(response.json()['failures']), 1)

        response = self.client.get(self._url('download_class_bundle'), {'partial': '1'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response['X-Report-Failures'], f'{self.kofi.pk},{self.ama.pk}')


@override_settings(GRADEBOOK_REPORT_FORMAT='html')
class ExportTaskTests(GradebookDataMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.media = tempfile.TemporaryDirectory()
        self.addCleanup(self.media.cleanup)
        media_override = override_settings(MEDIA_ROOT=self.media.name)
        media_override.enable()
        self.addCleanup(media_override.disable)

    def test_export_class_reports_zip(self):
        result = export_class_reports_zip(self.klass.pk, self.exam.pk)
        self.assertTrue(result['success'])
        self.assertEqual(result['total'], 2)
        self.assertEqual(result['errors'], [])

        path = os.path.join(self.media.name, 'exports', result['filename'])
        with zipfile.ZipFile(path) as zf:
            self.assertEqual(len(zf.namelist()), 2)

    def test_unknown_class_leaves_no_file(self):
        result = export_class_reports_zip(999, self.exam.pk)
        self.assertFalse(result['success'])
        self.assertEqual(os.listdir(os.path.join(self.media.name, 'exports')), [])

    @override_settings(GRADEBOOK_REPORT_TEMPLATE='gradebook/missing.html')
    def test_partial_export_lists_errors(self):
        result = export_class_reports_zip(self.klass.pk, self.exam.pk, failure_policy='partial')
        self.assertTrue(result['success'])
        self.assertEqual(len(result['errors']), 2)

    def test_unknown_policy_leaves_no_file(self):
        result = export_class_reports_zip(self.klass.pk, self.exam.pk, failure_policy='best_effort')
        self.assertFalse(result['success'])
        self.assertIn('best_effort', result['error'])
        exports = os.path.join(self.media.name, 'exports')
        self.assertEqual(os.listdir(exports) if os.path.exists(exports) else [], [])

    def test_unexpected_error_leaves_no_file(self):
        with mock.patch.object(ReportCardService, 'generate_class_report_bundle', side_effect=RuntimeError('disk')):
            with self.assertRaises(RuntimeError):
                export_class_reports_zip(self.klass.pk, self.exam.pk)
        self.assertEqual(os.listdir(os.path.join(self.media.name, 'exports')), [])

    def test_cleanup_export_zips(self):
        exports = os.path.join(self.media.name, 'exports')
        os.makedirs(exports)
        old = os.path.join(exports, 'old.zip')
        fresh = os.path.join(exports, 'fresh.zip')
        for path in (old, fresh):
            with open(path, 'wb') as fh:
                fh.write(b'PK')
        stale = time.time() - 48 * 3600
        os.utime(old, (stale, stale))

        self.assertEqual(cleanup_export_zips(), {'deleted': 1})
        self.assertEqual(os.listdir(exports), ['fresh.zip'])


class ExportCommandTests(GradebookDataMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_zip(self):
        output = os.path.join(self.tmp.name, 'reports.zip')
        out = io.StringIO()
        call_command(
            'export_class_results', self.klass.pk, self.exam.pk,
            '--output', output, '--report-format', 'html', stdout=out,
        )
        self.assertIn('Wrote 2 report cards', out.getvalue())
        with zipfile.ZipFile(output) as zf:
            self.assertEqual(len(zf.namelist()), 2)

    def test_csv(self):
        output = os.path.join(self.tmp.name, 'analytics.csv')
        call_command(
            'export_class_results', self.klass.pk, self.exam.pk,
            '--format', 'csv', '--output', output, stdout=io.StringIO(),
        )
        with open(output, newline='', encoding='utf-8') as fh:
            rows = list(csv.reader(fh))
        self.assertEqual(rows[0], ['Metric', 'Value'])

    def test_unknown_exam(self):
        with self.assertRaises(CommandError):
            call_command(
                'export_class_results', self.klass.pk, 999,
                '--format', 'csv', '--output', os.path.join(self.tmp.name, 'x.csv'),
                stdout=io.StringIO(),
            )

    @override_settings(GRADEBOOK_REPORT_TEMPLATE='gradebook/missing.html')
    def test_failed_bundle_leaves_no_file(self):
        output = os.path.join(self.tmp.name, 'reports.zip')
        with self.assertRaises(CommandError):
            call_command(
                'export_class_results', self.klass.pk, self.exam.pk,
                '--output', output, '--report-format', 'html', stdout=io.StringIO(),
            )
        self.assertFalse(os.path.exists(output))

    def test_unknown_class_bundle_leaves_no_file(self):
        output = os.path.join(self.tmp.name, 'reports.zip')
        with self.assertRaises(CommandError):
            call_command(
                'export_class_results', 999, self.exam.pk,
                '--output', output, '--report-format', 'html', stdout=io.StringIO(),
            )
        self.assertFalse(os.path.exists(output))
