"""
Management command to export a class's exam results.

Usage:
    # ZIP of report cards, one per student
    python manage.py export_class_results 3 7 --output reports.zip

    # Keep going when a student's report fails
    python manage.py export_class_results 3 7 --output reports.zip --partial

    # Analytics as CSV or Excel
    python manage.py export_class_results 3 7 --format csv --output analytics.csv
"""
import os
import signal
import threading

from django.core.management.base import BaseCommand, CommandError

from gradebook import config
from gradebook.exceptions import BulkJobFailure, ExportFailure, NotFound
from gradebook.services import ReportCardService, get_template_renderer


class Command(BaseCommand):
    help = 'Export report cards (zip) or class analytics (csv/xlsx) for a class and exam'

    def add_arguments(self, parser):
        parser.add_argument('class_id', type=int)
        parser.add_argument('exam_id', type=int)
        parser.add_argument(
            '--format',
            choices=['zip', 'csv', 'xlsx'],
            default='zip',
            help='What to export (default: zip of report cards)',
        )
        parser.add_argument(
            '--output',
            required=True,
            help='File to write',
        )
        parser.add_argument(
            '--partial',
            action='store_true',
            help='Skip students whose report fails instead of aborting',
        )
        parser.add_argument(
            '--workers',
            type=int,
            help='Concurrent report renders',
        )
        parser.add_argument(
            '--report-format',
            choices=['pdf', 'html'],
            help='Report card document format',
        )

    def handle(self, *args, **options):
        kwargs = {}
        if options.get('workers'):
            kwargs['max_workers'] = options['workers']
        if options.get('report_format'):
            kwargs['template_renderer'] = get_template_renderer(options['report_format'])
        service = ReportCardService.from_settings(**kwargs)

        try:
            if options['format'] == 'zip':
                self._export_bundle(service, options)
            elif options['format'] == 'csv':
                content = service.export_analytics_csv(options['class_id'], options['exam_id'])
                with open(options['output'], 'w', newline='', encoding='utf-8') as fh:
                    fh.write(content)
                self.stdout.write(self.style.SUCCESS(f"Wrote analytics to {options['output']}"))
            else:
                content = service.export_analytics_xlsx(options['class_id'], options['exam_id'])
                with open(options['output'], 'wb') as fh:
                    fh.write(content)
                self.stdout.write(self.style.SUCCESS(f"Wrote analytics to {options['output']}"))
        except (NotFound, ExportFailure, BulkJobFailure) as e:
            raise CommandError(str(e))

    def _export_bundle(self, service, options):
        cancel_event = threading.Event()
        previous_handler = None
        installed = threading.current_thread() is threading.main_thread()
        if installed:
            # Ctrl+C stops dispatching new renders instead of killing mid-write
            previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())

        output = options['output']
        try:
            with open(output, 'wb') as fh:
                try:
                    bundle = service.generate_class_report_bundle(
                        options['class_id'], options['exam_id'],
                        fileobj=fh,
                        cancel_event=cancel_event,
                        failure_policy=config.PARTIAL if options['partial'] else None,
                    )
                except Exception:
                    # A failed or cancelled bundle leaves no archive behind
                    fh.close()
                    os.remove(output)
                    raise
        finally:
            if installed:
                signal.signal(signal.SIGINT, previous_handler)

        for failure in bundle.failures:
            self.stderr.write(f"  {failure.student_name}: {failure.reason}")
        self.stdout.write(self.style.SUCCESS(
            f"Wrote {len(bundle.entries)} report cards to {output}"
            + (f" ({len(bundle.failures)} failed)" if bundle.failures else '')
        ))
