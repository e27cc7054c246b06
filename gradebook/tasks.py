"""
Celery tasks for gradebook app.
Handles background generation of class report bundles.
"""
import logging
import os
import time
import uuid

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

from . import config
from .exceptions import BulkJobFailure, NotFound


logger = logging.getLogger(__name__)


def export_dir():
    return os.path.join(settings.MEDIA_ROOT, 'exports')


@shared_task(
    bind=True,
    max_retries=0,
    soft_time_limit=config.BULK_TASK_SOFT_TIME_LIMIT,
    time_limit=config.BULK_TASK_TIME_LIMIT,
)
def export_class_reports_zip(self, class_id, exam_id, failure_policy=None):
    """
    Generate a ZIP file containing report cards for all students in a class.

    Updates task state with progress so the frontend can poll for status.

    Args:
        class_id: ID of the Class
        exam_id: ID of the Exam
        failure_policy: 'fail_fast' or 'partial' (defaults to the configured policy)

    Returns:
        dict with success, filename, total, and errors list
    """
    from .services import ReportCardService

    if failure_policy is not None and failure_policy not in config.FAILURE_POLICIES:
        logger.error(f"Report bundle export rejected: unknown failure policy {failure_policy}")
        return {'success': False, 'error': f"Unknown failure policy: {failure_policy}"}

    os.makedirs(export_dir(), exist_ok=True)
    short_uuid = uuid.uuid4().hex[:8]
    zip_filename = f"class{class_id}_exam{exam_id}_{short_uuid}.zip"
    zip_path = os.path.join(export_dir(), zip_filename)

    def report_progress(done, total):
        if not self.request.called_directly:
            self.update_state(state='PROGRESS', meta={'current': done, 'total': total})

    service = ReportCardService.from_settings()
    try:
        with open(zip_path, 'wb') as fh:
            bundle = service.generate_class_report_bundle(
                class_id, exam_id,
                fileobj=fh,
                failure_policy=failure_policy,
                progress=report_progress,
            )
    except NotFound as e:
        logger.error(f"Report bundle export failed: {e}")
        os.remove(zip_path)
        return {'success': False, 'error': str(e)}
    except BulkJobFailure as e:
        logger.error(f"Report bundle export aborted: {e}")
        os.remove(zip_path)
        return {
            'success': False,
            'error': str(e),
            'errors': [str(failure) for failure in e.failures],
        }
    except SoftTimeLimitExceeded:
        logger.error(f"Report bundle export for class {class_id} exceeded its time limit")
        os.remove(zip_path)
        raise
    except Exception:
        logger.exception(f"Report bundle export for class {class_id} failed")
        os.remove(zip_path)
        raise

    return {
        'success': True,
        'filename': zip_filename,
        'total': len(bundle.entries) + len(bundle.failures),
        'errors': [f"{failure.student_name}: {failure.reason[:100]}" for failure in bundle.failures],
    }


@shared_task
def cleanup_export_zips():
    """
    Remove ZIP export files older than EXPORT_ZIP_MAX_AGE_HOURS.

    Intended to be registered as a periodic task with Celery beat.
    """
    max_age_hours = config.EXPORT_ZIP_MAX_AGE_HOURS
    exports_root = export_dir()

    if not os.path.exists(exports_root):
        return {'deleted': 0}

    cutoff = time.time() - (max_age_hours * 3600)
    deleted = 0

    for dirpath, dirnames, filenames in os.walk(exports_root):
        for filename in filenames:
            if not filename.endswith('.zip'):
                continue
            filepath = os.path.join(dirpath, filename)
            if os.path.getmtime(filepath) < cutoff:
                os.remove(filepath)
                deleted += 1

    logger.info(f"Removed {deleted} expired report bundle exports")
    return {'deleted': deleted}
