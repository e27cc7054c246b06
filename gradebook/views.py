"""
Thin HTTP layer over ReportCardService.
"""
import logging
from decimal import Decimal, InvalidOperation

from django.contrib.auth.decorators import login_required
from django.http import Http404, HttpResponse, JsonResponse
from django.views.decorators.http import require_GET

from . import config
from .exceptions import BulkJobFailure, ExportFailure, NotFound, RenderFailure
from .services import ReportCardService

logger = logging.getLogger(__name__)


def get_service(**kwargs):
    return ReportCardService.from_settings(**kwargs)


def _attachment(content, content_type, filename):
    response = HttpResponse(content, content_type=content_type)
    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response


def _pass_mark(request):
    raw = request.GET.get('pass_mark')
    if raw in (None, ''):
        return None
    try:
        pass_mark = Decimal(raw)
    except InvalidOperation:
        return False
    if not pass_mark.is_finite() or pass_mark < 0:
        return False
    return pass_mark


@login_required
@require_GET
def class_analytics(request, class_id, exam_id):
    """Class average, pass rates and rankings as JSON."""
    pass_mark = _pass_mark(request)
    if pass_mark is False:
        return JsonResponse({'error': 'pass_mark must be a non-negative number'}, status=400)

    limit = request.GET.get('limit')
    if limit is not None and not limit.isdigit():
        return JsonResponse({'error': 'limit must be a whole number'}, status=400)

    try:
        analytics = get_service().compute_class_analytics(
            class_id, exam_id,
            pass_mark=pass_mark,
            limit=int(limit) if limit is not None else None,
        )
    except NotFound as e:
        raise Http404(str(e))
    return JsonResponse(analytics.to_dict())


@login_required
@require_GET
def download_student_report(request, student_id, exam_id):
    """Download one student's report card."""
    service = get_service()
    try:
        document = service.generate_student_report(student_id, exam_id)
    except NotFound as e:
        raise Http404(str(e))
    except RenderFailure as e:
        logger.error(f"Failed to generate report card: {e}")
        return JsonResponse({'error': str(e)}, status=500)

    return _attachment(
        document,
        service.content_type,
        f"report_card_student{student_id}_exam{exam_id}{service.extension}",
    )


@login_required
@require_GET
def download_class_bundle(request, class_id, exam_id):
    """
    Download every report card of a class as a ZIP.

    ``?partial=1`` keeps going past failed students; the failures are listed
    in the X-Report-Failures header.
    """
    failure_policy = config.PARTIAL if request.GET.get('partial') == '1' else None
    try:
        bundle = get_service().generate_class_report_bundle(
            class_id, exam_id, failure_policy=failure_policy,
        )
    except NotFound as e:
        raise Http404(str(e))
    except BulkJobFailure as e:
        return JsonResponse({
            'error': str(e),
            'failures': [str(failure) for failure in e.failures],
        }, status=500)

    response = _attachment(
        bundle.archive,
        'application/zip',
        f"report_cards_class{class_id}_exam{exam_id}.zip",
    )
    if bundle.failures:
        response['X-Report-Failures'] = ','.join(str(f.student_id) for f in bundle.failures)
    return response


@login_required
@require_GET
def export_analytics_csv(request, class_id, exam_id):
    pass_mark = _pass_mark(request)
    if pass_mark is False:
        return JsonResponse({'error': 'pass_mark must be a non-negative number'}, status=400)
    try:
        content = get_service().export_analytics_csv(class_id, exam_id, pass_mark=pass_mark)
    except NotFound as e:
        raise Http404(str(e))
    except ExportFailure as e:
        return JsonResponse({'error': str(e)}, status=400)
    return _attachment(content, 'text/csv', f"analytics_class{class_id}_exam{exam_id}.csv")


@login_required
@require_GET
def export_analytics_xlsx(request, class_id, exam_id):
    pass_mark = _pass_mark(request)
    if pass_mark is False:
        return JsonResponse({'error': 'pass_mark must be a non-negative number'}, status=400)
    service = get_service()
    try:
        content = service.export_analytics_xlsx(class_id, exam_id, pass_mark=pass_mark)
    except NotFound as e:
        raise Http404(str(e))
    except ExportFailure as e:
        return JsonResponse({'error': str(e)}, status=400)
    return _attachment(
        content,
        service.formatter.xlsx_content_type,
        f"analytics_class{class_id}_exam{exam_id}.xlsx",
    )
