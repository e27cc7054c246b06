"""
Tabular exports of class analytics (CSV and Excel).

Both formats share one row layout:

    Metric,Value
    Average,<class average>
    Pass Rate,<overall pass rate>
    Subject Average (<subject>),<average>      one per subject
    Top Performer <n>,<name> (<total>)         one per top performer
    Bottom Performer <n>,<name> (<total>)      one per bottom performer
"""
import csv
import io
from decimal import Decimal, InvalidOperation

import openpyxl
from openpyxl.styles import Font, Alignment, PatternFill

from . import config
from .exceptions import ExportFailure

HEADER = ('Metric', 'Value')


def format_number(value):
    """Render a score/percentage with two decimals. Raises ExportFailure."""
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float)):
        raise ExportFailure(f"Cannot export value {value!r} of type {type(value).__name__}")
    try:
        number = Decimal(str(value))
        if not number.is_finite():
            raise ExportFailure(f"Cannot export non-finite value {value!r}")
        return str(number.quantize(Decimal('0.01')))
    except InvalidOperation as e:
        raise ExportFailure(f"Cannot export value {value!r}") from e


def _format_text(value):
    if not isinstance(value, str):
        raise ExportFailure(f"Cannot export value {value!r} of type {type(value).__name__}")
    return value


def _performer_label(performer):
    return f"{_format_text(performer.student.full_name)} ({format_number(performer.total_score)})"


def analytics_rows(analytics):
    """
    Flatten ClassAnalytics into (metric, value) string pairs.

    Raises:
        ExportFailure: if a value cannot be serialized
    """
    rows = [
        ('Average', format_number(analytics.class_average)),
        ('Pass Rate', format_number(analytics.pass_rate)),
    ]
    for stat in analytics.subject_stats:
        rows.append((
            f"Subject Average ({_format_text(stat.subject.name)})",
            format_number(stat.average),
        ))
    for n, performer in enumerate(analytics.top_performers, 1):
        rows.append((f"Top Performer {n}", _performer_label(performer)))
    for n, performer in enumerate(analytics.bottom_performers, 1):
        rows.append((f"Bottom Performer {n}", _performer_label(performer)))
    return rows


class ExportFormatter:
    """Serializes ClassAnalytics for download."""

    csv_content_type = 'text/csv'
    xlsx_content_type = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

    def to_csv(self, analytics):
        """Return CSV text; fields with commas, quotes or newlines are quoted."""
        rows = analytics_rows(analytics)
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator='\n')
        try:
            writer.writerow(HEADER)
            writer.writerows(rows)
        except csv.Error as e:
            raise ExportFailure(f"CSV export failed: {e}") from e
        return buffer.getvalue()

    def to_xlsx(self, analytics):
        """Return an Excel workbook with the same rows as the CSV export."""
        rows = analytics_rows(analytics)

        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Analytics"

        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color=config.EXCEL_HEADER_COLOR, end_color=config.EXCEL_HEADER_COLOR, fill_type="solid")

        for col, header in enumerate(HEADER, 1):
            cell = ws.cell(row=1, column=col, value=header)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal='center')

        for row, (metric, value) in enumerate(rows, 2):
            ws.cell(row=row, column=1, value=metric)
            ws.cell(row=row, column=2, value=value)

        ws.column_dimensions['A'].width = 35
        ws.column_dimensions['B'].width = 40

        buffer = io.BytesIO()
        wb.save(buffer)
        return buffer.getvalue()
