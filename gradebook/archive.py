"""
Class report bundles: one report card per student, packed into a ZIP archive.

Each render runs on its own worker thread; the calling thread is the only
archive writer. At most ``max_workers`` documents are in flight, and they are
appended in roster order as they complete, so peak memory does not grow with
class size.
All database reads happen on the calling thread before anything is dispatched.
"""
import logging
import re
import threading
import time
import zipfile
from collections import Counter, defaultdict, deque
from concurrent import futures
from io import BytesIO

from . import config
from .analytics import rank_students
from .exceptions import BulkJobCancelled, BulkJobFailure, RenderFailure
from .results import BundleResult, FailedRender

logger = logging.getLogger(__name__)

# How often a writer blocked on a render checks for cancellation
POLL_INTERVAL = 0.1

_UNSAFE_CHARS = re.compile(r'[^\w.-]+')


def _safe_part(value):
    return _UNSAFE_CHARS.sub('_', value.strip()).strip('_') or 'student'


def build_entry_names(roster, extension=''):
    """
    Assign a unique archive entry name to every student.

    The base name is ``{first_name}_{last_name}_report``. Students sharing a
    base name get their id appended; a numeric suffix covers anything left.
    Comparison is case-insensitive so archives extract cleanly everywhere.

    Returns:
        dict: student id -> entry name
    """
    bases = {
        student.id: f"{_safe_part(student.first_name)}_{_safe_part(student.last_name)}_report"
        for student in roster
    }
    counts = Counter(base.lower() for base in bases.values())

    names = {}
    used = set()
    for student in roster:
        base = bases[student.id]
        stem = base if counts[base.lower()] == 1 else f"{base}_{student.id}"
        name = f"{stem}{extension}"
        suffix = 2
        while name.lower() in used:
            name = f"{stem}_{suffix}{extension}"
            suffix += 1
        used.add(name.lower())
        names[student.id] = name
    return names


class _RenderTask:
    """
    One render on its own daemon thread.

    ``started_at`` is set when the thread begins, which is when the timeout
    clock starts. A render that overruns is abandoned rather than joined, so
    it never holds up the renders queued behind it.
    """

    def __init__(self, fn, *args):
        self.future = futures.Future()
        self.started_at = None
        threading.Thread(
            target=self._run, args=(fn, args), name='report-render', daemon=True,
        ).start()

    def _run(self, fn, args):
        self.started_at = time.monotonic()
        if not self.future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args)
        except Exception as e:
            self.future.set_exception(e)
        else:
            self.future.set_result(result)


class BulkReportArchiver:
    """
    Builds a ZIP of report cards for every student in a class.

    Args:
        aggregator: ResultsAggregator
        renderer: ReportRenderer
        max_workers: concurrent renders (GRADEBOOK_REPORT_RENDER_WORKERS)
        render_timeout: seconds allowed per student, from the start of its render
        failure_policy: 'fail_fast' or 'partial'
    """

    def __init__(self, aggregator, renderer, max_workers=None, render_timeout=None, failure_policy=None):
        self.aggregator = aggregator
        self.renderer = renderer
        self.max_workers = max(int(max_workers or config.REPORT_RENDER_WORKERS), 1)
        self.render_timeout = float(render_timeout or config.REPORT_RENDER_TIMEOUT)
        self.failure_policy = failure_policy or config.REPORT_BUNDLE_FAILURE_POLICY

    def build(self, class_id, exam_id, fileobj=None, cancel_event=None, template_id=None,
              failure_policy=None, progress=None):
        """
        Render and archive every student's report card.

        Args:
            fileobj: writable binary file to receive the archive; when omitted
                the archive bytes are returned in the result
            cancel_event: threading.Event; setting it aborts the job
            failure_policy: per-call override of the failure policy
            progress: optional callable(done, total) invoked after each student

        Returns:
            BundleResult

        Raises:
            NotFound: unknown class or exam
            BulkJobFailure: a render failed under the fail-fast policy
            BulkJobCancelled: cancel_event was set before the job finished
        """
        policy = failure_policy or self.failure_policy
        if policy not in config.FAILURE_POLICIES:
            raise ValueError(f"Unknown failure policy: {policy}")

        exam, klass, roster = self.aggregator.class_roster(class_id, exam_id)
        results = self.aggregator.results_for_class(exam, klass.id, roster)

        ranked = rank_students(results)
        positions = {performer.student.id: performer.position for performer in ranked}
        total_students = len(ranked)
        results_by_student = defaultdict(list)
        for entry in results:
            results_by_student[entry.student.id].append(entry)

        names = build_entry_names(roster, self.renderer.extension)
        total = len(roster)
        logger.info(
            f"Building report bundle for class {klass.name} ({total} students), "
            f"exam {exam.name}, policy {policy}"
        )

        target = fileobj if fileobj is not None else BytesIO()
        bundle = BundleResult(archive=None)
        pending = iter(roster)
        in_flight = deque()

        try:
            with zipfile.ZipFile(target, 'w', zipfile.ZIP_DEFLATED) as zf:
                while True:
                    # Never more than max_workers live renders or buffered documents
                    while len(in_flight) < self.max_workers:
                        self._check_cancelled(cancel_event)
                        student = next(pending, None)
                        if student is None:
                            break
                        task = _RenderTask(
                            self.renderer.render,
                            student,
                            results_by_student.get(student.id, []),
                            exam,
                            positions.get(student.id),
                            total_students,
                            template_id,
                            klass.name,
                        )
                        in_flight.append((student, task))

                    if not in_flight:
                        break

                    student, task = in_flight.popleft()
                    try:
                        document = self._wait(student, task, cancel_event)
                    except RenderFailure as failure:
                        if policy == config.FAIL_FAST:
                            logger.error(
                                f"Aborting report bundle for class {klass.name}: {failure}"
                            )
                            raise BulkJobFailure(
                                f"Report bundle for class {klass.name} aborted: {failure}",
                                failures=[failure],
                            ) from failure
                        logger.warning(f"Skipping {student.full_name} in report bundle: {failure.reason}")
                        bundle.failures.append(FailedRender(
                            student_id=student.id,
                            student_name=student.full_name,
                            reason=failure.reason,
                        ))
                    else:
                        zf.writestr(names[student.id], document)
                        bundle.entries.append(names[student.id])

                    if progress is not None:
                        progress(len(bundle.entries) + len(bundle.failures), total)
        except BulkJobCancelled:
            logger.warning(f"Report bundle for class {klass.name} cancelled")
            raise
        finally:
            for _, task in in_flight:
                task.future.cancel()

        if fileobj is None:
            bundle.archive = target.getvalue()

        logger.info(
            f"Report bundle for class {klass.name} finished: "
            f"{len(bundle.entries)} documents, {len(bundle.failures)} failures"
        )
        return bundle

    @staticmethod
    def _check_cancelled(cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise BulkJobCancelled("Report bundle cancelled by caller")

    def _wait(self, student, task, cancel_event):
        while True:
            self._check_cancelled(cancel_event)
            timeout = POLL_INTERVAL
            if task.started_at is not None:
                remaining = task.started_at + self.render_timeout - time.monotonic()
                if remaining <= 0 and not task.future.done():
                    task.future.cancel()
                    raise RenderFailure(student.id, f"timed out after {self.render_timeout:g}s")
                timeout = max(min(remaining, POLL_INTERVAL), 0)
            try:
                return task.future.result(timeout=timeout)
            except futures.TimeoutError:
                continue
            except RenderFailure:
                raise
            except Exception as e:
                raise RenderFailure(student.id, str(e) or e.__class__.__name__) from e
