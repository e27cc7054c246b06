"""
Configuration settings for the gradebook app.

These values can be overridden in Django settings by prefixing with GRADEBOOK_.
For example, to render more report cards in parallel:
    GRADEBOOK_REPORT_RENDER_WORKERS = 8

All configuration values are lazily loaded to avoid Django setup issues.
"""
from decimal import Decimal


def _get_setting(name, default):
    """Get a gradebook setting from Django settings or use default."""
    from django.conf import settings
    return getattr(settings, f'GRADEBOOK_{name}', default)


FAIL_FAST = 'fail_fast'
PARTIAL = 'partial'
FAILURE_POLICIES = (FAIL_FAST, PARTIAL)

MEMBERSHIP_CURRENT = 'current'
MEMBERSHIP_ENROLLMENT = 'enrollment'


# Define defaults as constants for direct use when Django settings are not needed
_DEFAULTS = {
    # Analytics
    'DEFAULT_PASS_MARK': Decimal('50'),
    'TOP_PERFORMERS_LIMIT': 10,

    # How class membership is resolved: 'current' uses Student.current_class,
    # 'enrollment' uses the Enrollment row for the exam's academic year
    'CLASS_MEMBERSHIP': MEMBERSHIP_CURRENT,

    # Report cards
    'REPORT_TEMPLATE': 'gradebook/report_card.html',
    'REPORT_FORMAT': 'pdf',  # 'pdf' (WeasyPrint) or 'html'
    'DEFAULT_SCHOOL_NAME': 'School',
    'GUARDIAN_FALLBACK': 'Parent/Guardian',

    # Bulk report bundles
    'REPORT_RENDER_WORKERS': 4,
    'REPORT_RENDER_TIMEOUT': 60,  # seconds, per student
    'REPORT_BUNDLE_FAILURE_POLICY': FAIL_FAST,

    # Export settings
    'EXCEL_HEADER_COLOR': '4F46E5',
    'EXPORT_ZIP_MAX_AGE_HOURS': 24,

    # Celery task settings
    'BULK_TASK_SOFT_TIME_LIMIT': 25 * 60,
    'BULK_TASK_TIME_LIMIT': 30 * 60,
}


class _ConfigProxy:
    """
    Lazy configuration proxy that loads settings only when accessed.
    This avoids Django setup issues during module import.
    """

    def __getattr__(self, name):
        if name in _DEFAULTS:
            return _get_setting(name, _DEFAULTS[name])
        raise AttributeError(f"Unknown config setting: {name}")


# Module-level proxy object for attribute access
_config = _ConfigProxy()


def __getattr__(name):
    """Enable module-level attribute access via the config proxy."""
    return getattr(_config, name)
