"""
Alert dispatcher.

Turns a detected downward crossing into one AlertEvent, appends it to the
alert log and hands it to the notification channel on a worker pool. The
caller's GPA write has already committed by then, and nothing raised while
publishing ever reaches the caller. Events the channel defers are retried
by a redelivery loop that runs apart from the batch timer.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

import config
from errors import ChannelError, RecordStoreUnavailable
from events import AlertEvent
from notifications import NotificationChannel, PublishResult

logger = logging.getLogger(__name__)


class AlertDispatcher:
    def __init__(self, store, channel: NotificationChannel, max_workers: int = config.DISPATCH_WORKERS):
        self.store = store
        self.channel = channel
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert-dispatch")
        self._futures = set()
        self._futures_lock = threading.Lock()
        self._scope = threading.local()
        self._redelivery_thread: Optional[threading.Thread] = None
        self._redelivery_stop = threading.Event()

    @contextmanager
    def operation(self):
        """
        Mark one logical operation. Within it at most one event is built per
        student, however many times the update pipeline runs. Nested scopes
        join the outermost one.
        """
        if getattr(self._scope, "seen", None) is not None:
            yield
            return
        self._scope.seen = set()
        try:
            yield
        finally:
            self._scope.seen = None

    def dispatch(self, student_id: int, previous_gpa: Optional[float], new_gpa: float,
                 source: str = "trigger") -> Optional[AlertEvent]:
        """Record and publish an alert. Returns None when suppressed in this scope."""
        seen = getattr(self._scope, "seen", None)
        if seen is not None:
            if student_id in seen:
                logger.info(f"Alert for student {student_id} already dispatched in this operation")
                return None
            seen.add(student_id)

        event = AlertEvent(
            student_id=student_id,
            previous_gpa=previous_gpa,
            new_gpa=new_gpa,
            source=source,
        )
        logger.info(
            f"Low GPA alert {event.event_id} for student {student_id}: "
            f"{event.describe_change()} ({source})"
        )

        try:
            self.store.append_alert(event)
        except (RecordStoreUnavailable, SQLAlchemyError) as e:
            logger.error(
                f"Failed to log alert {event.event_id} for student {student_id} "
                f"at {event.timestamp.isoformat()} (stage=persist): {str(e)}",
                exc_info=True,
            )

        future = self._executor.submit(self._publish, event)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._on_done)
        return event

    def _publish(self, event: AlertEvent) -> Optional[PublishResult]:
        try:
            result = self.channel.publish(event)
        except ChannelError as e:
            logger.error(
                f"Channel error publishing alert {event.event_id} for student "
                f"{event.student_id} (stage=publish): {str(e)}"
            )
            return None
        if result == PublishResult.RETRY_LATER:
            logger.warning(
                f"Channel deferred alert {event.event_id} for student {event.student_id}; "
                f"it will be redelivered by the channel"
            )
        else:
            logger.info(f"Alert {event.event_id} delivered")
        return result

    def _on_done(self, future):
        with self._futures_lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Unexpected error publishing alert: {str(error)}", exc_info=error)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight publishes. Returns False on timeout."""
        with self._futures_lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # ============= REDELIVERY =============

    def redeliver(self) -> int:
        """Ask the channel to retry deferred events once"""
        try:
            return self.channel.retry_pending()
        except Exception as e:
            logger.error(f"Redelivery of deferred alerts failed: {str(e)}", exc_info=True)
            return 0

    def start_redelivery(self, interval: float = config.REDELIVERY_INTERVAL_SECONDS):
        if self._redelivery_thread is not None and self._redelivery_thread.is_alive():
            return
        self._redelivery_stop.clear()

        def loop():
            while not self._redelivery_stop.wait(interval):
                self.redeliver()

        self._redelivery_thread = threading.Thread(target=loop, name="alert-redelivery", daemon=True)
        self._redelivery_thread.start()
        logger.info(f"Alert redelivery started with interval {interval}s")

    def stop_redelivery(self):
        self._redelivery_stop.set()
        if self._redelivery_thread is not None:
            self._redelivery_thread.join()
            self._redelivery_thread = None

    def shutdown(self):
        self.stop_redelivery()
        self._executor.shutdown(wait=True)
