"""
Class and subject statistics computed from ResultEntry lists.

The calculate_* helpers are pure and work on any result list. AnalyticsEngine
wraps them with the aggregator so callers can ask by class and exam id.

Ranking rule: higher total first; equal totals are ordered by ascending
student id and share the same position (1, 2, 2, 4).
"""
import logging
from collections import OrderedDict, defaultdict
from decimal import Decimal, ROUND_HALF_UP

from . import config
from .results import ClassAnalytics, Performer, SubjectStat

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')


def _round(value):
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _to_decimal(value):
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _resolve_pass_mark(pass_mark):
    if pass_mark is None:
        pass_mark = config.DEFAULT_PASS_MARK
    return _to_decimal(pass_mark)


def _resolve_limit(limit):
    if limit is None:
        limit = config.TOP_PERFORMERS_LIMIT
    return max(int(limit), 0)


def calculate_class_average(results):
    """
    Sum of every score divided by the number of distinct students.

    Scores of all subjects are added up per student before dividing, so a
    multi-subject exam gives values above 100. Returns 0 for no results.
    """
    if not results:
        return ZERO
    students = {entry.student.id for entry in results}
    total = sum((entry.score for entry in results), ZERO)
    return _round(total / len(students))


def calculate_subject_stats(results, pass_mark=None):
    """
    Per-subject pass rate, sample size and average, ordered by subject id.

    Subjects without marks never appear.
    """
    pass_mark = _resolve_pass_mark(pass_mark)
    subject_data = defaultdict(lambda: {'subject': None, 'scores': [], 'passed': 0})

    for entry in results:
        data = subject_data[entry.subject.id]
        data['subject'] = entry.subject
        data['scores'].append(entry.score)
        if entry.score >= pass_mark:
            data['passed'] += 1

    stats = []
    for subject_id in sorted(subject_data):
        data = subject_data[subject_id]
        sample_size = len(data['scores'])
        if not sample_size:
            continue
        stats.append(SubjectStat(
            subject=data['subject'],
            pass_rate=_round(Decimal(data['passed']) / sample_size * HUNDRED),
            sample_size=sample_size,
            average=_round(sum(data['scores'], ZERO) / sample_size),
        ))
    return stats


def calculate_student_totals(results):
    """Return an ordered mapping of student id -> (StudentRecord, total score)."""
    totals = OrderedDict()
    for entry in results:
        student, total = totals.get(entry.student.id, (entry.student, ZERO))
        totals[entry.student.id] = (student, total + entry.score)
    return totals


def rank_students(results):
    """
    Rank students by total score, best first.

    Returns:
        list of Performer with competition positions
    """
    totals = calculate_student_totals(results).values()
    ordered = sorted(totals, key=lambda item: (-item[1], item[0].id))

    ranked = []
    position = 0
    last_total = None
    for i, (student, total) in enumerate(ordered, 1):
        if total != last_total:
            position = i
        ranked.append(Performer(student=student, total_score=total, position=position))
        last_total = total
    return ranked


def calculate_top_performers(results, limit=None):
    return rank_students(results)[:_resolve_limit(limit)]


def calculate_bottom_performers(results, limit=None):
    ranked = sorted(rank_students(results), key=lambda p: (p.total_score, p.student.id))
    return ranked[:_resolve_limit(limit)]


def calculate_pass_rate(results, pass_mark=None):
    """Percentage of students who reached the pass mark in every subject they sat."""
    pass_mark = _resolve_pass_mark(pass_mark)
    lowest = {}
    for entry in results:
        current = lowest.get(entry.student.id)
        if current is None or entry.score < current:
            lowest[entry.student.id] = entry.score

    if not lowest:
        return ZERO
    passed = sum(1 for score in lowest.values() if score >= pass_mark)
    return _round(Decimal(passed) / len(lowest) * HUNDRED)


def summarize(results, class_id, exam_id, pass_mark=None, limit=None):
    """Build a ClassAnalytics value from an already aggregated result set."""
    pass_mark = _resolve_pass_mark(pass_mark)
    return ClassAnalytics(
        class_id=class_id,
        exam_id=exam_id,
        pass_mark=pass_mark,
        class_average=calculate_class_average(results),
        total_students=len({entry.student.id for entry in results}),
        pass_rate=calculate_pass_rate(results, pass_mark),
        subject_stats=calculate_subject_stats(results, pass_mark),
        top_performers=calculate_top_performers(results, limit),
        bottom_performers=calculate_bottom_performers(results, limit),
    )


class AnalyticsEngine:
    """Class/exam statistics backed by a ResultsAggregator."""

    def __init__(self, aggregator):
        self.aggregator = aggregator

    @staticmethod
    def class_average(results):
        return calculate_class_average(results)

    @staticmethod
    def rank_positions(results):
        """Map student id -> position in the class."""
        return {performer.student.id: performer.position for performer in rank_students(results)}

    def subject_pass_rate(self, class_id, exam_id, pass_mark=None):
        results = self.aggregator.class_results(class_id, exam_id)
        return calculate_subject_stats(results, pass_mark)

    def top_performers(self, class_id, exam_id, limit=None):
        results = self.aggregator.class_results(class_id, exam_id)
        return calculate_top_performers(results, limit)

    def bottom_performers(self, class_id, exam_id, limit=None):
        results = self.aggregator.class_results(class_id, exam_id)
        return calculate_bottom_performers(results, limit)

    def compute(self, class_id, exam_id, pass_mark=None, limit=None):
        results = self.aggregator.class_results(class_id, exam_id)
        analytics = summarize(results, int(class_id), int(exam_id), pass_mark, limit)
        logger.info(
            f"Computed analytics for class {class_id}, exam {exam_id}: "
            f"{analytics.total_students} students, average {analytics.class_average}"
        )
        return analytics
