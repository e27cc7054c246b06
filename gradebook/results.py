"""
Plain records passed between the results engine components.

Repositories convert ORM rows into these so that aggregation, analytics and
rendering never touch the database (bundle workers run on other threads).
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional


@dataclass(frozen=True)
class StudentRecord:
    id: int
    first_name: str
    last_name: str
    other_names: str = ''
    guardian_name: str = ''
    admission_number: str = ''
    class_id: Optional[int] = None
    class_name: str = ''

    @property
    def full_name(self):
        names = [self.first_name]
        if self.other_names:
            names.append(self.other_names)
        names.append(self.last_name)
        return ' '.join(names)


@dataclass(frozen=True)
class SubjectRecord:
    id: int
    name: str
    short_name: str = ''


@dataclass(frozen=True)
class ClassRecord:
    id: int
    name: str


@dataclass(frozen=True)
class ExamRecord:
    id: int
    name: str
    academic_year_id: Optional[int] = None
    academic_year_name: str = ''
    term_id: Optional[int] = None
    term_name: str = ''
    max_score: Decimal = Decimal('100')


@dataclass(frozen=True)
class MarkRecord:
    exam_id: int
    student_id: int
    subject_id: int
    score: Decimal
    entered_by: Optional[str] = None
    entered_at: Optional[datetime] = None


@dataclass(frozen=True)
class ResultEntry:
    """One student's score in one subject of an exam."""
    student: StudentRecord
    subject: SubjectRecord
    score: Decimal


@dataclass(frozen=True)
class SubjectStat:
    subject: SubjectRecord
    pass_rate: Decimal
    sample_size: int
    average: Decimal

    def to_dict(self) -> Dict:
        return {
            'subject': self.subject.name,
            'pass_rate': str(self.pass_rate),
            'sample_size': self.sample_size,
            'average': str(self.average),
        }


@dataclass(frozen=True)
class Performer:
    student: StudentRecord
    total_score: Decimal
    position: int

    def to_dict(self) -> Dict:
        return {
            'student_id': self.student.id,
            'name': self.student.full_name,
            'total_score': str(self.total_score),
            'position': self.position,
        }


@dataclass(frozen=True)
class ClassAnalytics:
    class_id: int
    exam_id: int
    pass_mark: Decimal
    class_average: Decimal
    total_students: int
    pass_rate: Decimal
    subject_stats: List[SubjectStat] = field(default_factory=list)
    top_performers: List[Performer] = field(default_factory=list)
    bottom_performers: List[Performer] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'class_id': self.class_id,
            'exam_id': self.exam_id,
            'pass_mark': str(self.pass_mark),
            'class_average': str(self.class_average),
            'total_students': self.total_students,
            'pass_rate': str(self.pass_rate),
            'subject_stats': [s.to_dict() for s in self.subject_stats],
            'top_performers': [p.to_dict() for p in self.top_performers],
            'bottom_performers': [p.to_dict() for p in self.bottom_performers],
        }


@dataclass(frozen=True)
class FailedRender:
    """Manifest line for a student whose report could not be bundled."""
    student_id: int
    student_name: str
    reason: str


@dataclass
class BundleResult:
    archive: Optional[bytes]
    entries: List[str] = field(default_factory=list)
    failures: List[FailedRender] = field(default_factory=list)

    @property
    def is_partial(self):
        return bool(self.failures)
