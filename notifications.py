"""
Notification channels and alert subscribers.

A channel accepts AlertEvents and answers ACK or RETRY_LATER. Redelivery is
the channel's job: both channels keep deferred events in a RetryQueue that
``retry_pending`` drains, and the webhook channel also retries at the HTTP
layer. Delivery is at-least-once, so subscribers may see the same event twice.
"""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

import config
from errors import ChannelError
from events import AlertEvent, LOW_GPA_ALERT

logger = logging.getLogger(__name__)

Handler = Callable[[AlertEvent], None]


class PublishResult(str, Enum):
    ACK = "ack"
    RETRY_LATER = "retry_later"


class NotificationChannel:
    """Interface for anything an AlertEvent can be published to"""

    def publish(self, event: AlertEvent) -> PublishResult:
        raise NotImplementedError

    def retry_pending(self) -> int:
        return 0


@dataclass
class _PendingDelivery:
    event: AlertEvent
    attempts: int


class RetryQueue:
    """Events waiting for another delivery attempt, bounded by max_retries"""

    def __init__(self, max_retries: int = config.CHANNEL_MAX_RETRIES):
        self.max_retries = max_retries
        self._pending = deque()
        self._lock = threading.Lock()
        self.dead_letters: List[AlertEvent] = []

    def __len__(self) -> int:
        return len(self._pending)

    def defer(self, event: AlertEvent):
        with self._lock:
            self._pending.append(_PendingDelivery(event=event, attempts=1))

    def drain(self, attempt: Callable[[AlertEvent], bool]) -> int:
        """
        Run ``attempt`` once for every queued event. Returns how many were
        delivered. An attempt that raises ChannelError is permanent and goes
        straight to the dead letters.
        """
        with self._lock:
            batch = list(self._pending)
            self._pending.clear()

        delivered = 0
        for item in batch:
            try:
                ok = attempt(item.event)
            except ChannelError as e:
                logger.error(f"Dropping event {item.event.event_id} for student {item.event.student_id}: {str(e)}")
                self.dead_letters.append(item.event)
                continue
            if ok:
                delivered += 1
                continue
            item.attempts += 1
            if item.attempts >= self.max_retries:
                logger.error(
                    f"Giving up on event {item.event.event_id} for student "
                    f"{item.event.student_id} after {item.attempts} attempts"
                )
                self.dead_letters.append(item.event)
            else:
                with self._lock:
                    self._pending.append(item)
        if delivered:
            logger.info(f"Redelivered {delivered} deferred alert(s)")
        return delivered


class InProcessChannel(NotificationChannel):
    """Typed publish/subscribe bus with a bounded retry queue"""

    def __init__(self, max_retries: int = config.CHANNEL_MAX_RETRIES):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._retries = RetryQueue(max_retries)

    def subscribe(self, event_type: str, handler: Handler):
        with self._lock:
            self._subscribers[event_type].append(handler)

    @property
    def pending_count(self) -> int:
        return len(self._retries)

    @property
    def dead_letters(self) -> List[AlertEvent]:
        return self._retries.dead_letters

    def _deliver(self, event: AlertEvent) -> bool:
        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, ()))
        delivered = True
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                delivered = False
                logger.error(
                    f"Subscriber {getattr(handler, '__name__', type(handler).__name__)!r} failed for event "
                    f"{event.event_id} (student {event.student_id}): {str(e)}",
                    exc_info=True,
                )
        return delivered

    def publish(self, event: AlertEvent) -> PublishResult:
        if self._deliver(event):
            return PublishResult.ACK
        self._retries.defer(event)
        return PublishResult.RETRY_LATER

    def retry_pending(self) -> int:
        """Redeliver queued events once. Returns how many were delivered."""
        return self._retries.drain(self._deliver)


def create_retry_session(max_retries: int = config.CHANNEL_MAX_RETRIES) -> requests.Session:
    """HTTP session that retries throttling and server errors with backoff"""
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class WebhookChannel(NotificationChannel):
    """
    Posts alert events as JSON to an external notification endpoint.

    Throttled, unavailable and unreachable endpoints defer the event to the
    retry queue. Other 4xx answers are permanent and raise ChannelError.
    """

    def __init__(self, url: str, session: Optional[requests.Session] = None,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS,
                 max_retries: int = config.CHANNEL_MAX_RETRIES):
        self.url = url
        self.session = session or create_retry_session()
        self.timeout = timeout
        self._retries = RetryQueue(max_retries)

    @property
    def pending_count(self) -> int:
        return len(self._retries)

    @property
    def dead_letters(self) -> List[AlertEvent]:
        return self._retries.dead_letters

    def _post(self, event: AlertEvent) -> bool:
        try:
            resp = self.session.post(self.url, json=event.model_dump(mode="json"), timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Webhook unreachable for event {event.event_id}: {str(e)}")
            return False
        if resp.status_code == 429 or resp.status_code >= 500:
            logger.warning(f"Webhook answered HTTP {resp.status_code} for event {event.event_id}")
            return False
        if resp.status_code >= 400:
            raise ChannelError(f"Webhook rejected event {event.event_id} with HTTP {resp.status_code}")
        return True

    def publish(self, event: AlertEvent) -> PublishResult:
        if self._post(event):
            return PublishResult.ACK
        self._retries.defer(event)
        return PublishResult.RETRY_LATER

    def retry_pending(self) -> int:
        return self._retries.drain(self._post)


# ============= SUBSCRIBERS =============

class AdvisorTaskSubscriber:
    """Opens a follow-up task for the student's advisor"""

    def __init__(self, store):
        self.store = store

    def __call__(self, event: AlertEvent):
        subject = f"Low GPA follow-up: {event.describe_change()}"
        task = self.store.create_advisor_task(event, subject)
        logger.info(f"Advisor task {task.id} created for student {event.student_id}")


class LoggingEmailSender:
    """Email sender that logs messages and keeps them in an outbox"""

    def __init__(self):
        self.outbox: List[dict] = []

    def send(self, to: str, subject: str, body: str):
        self.outbox.append({"to": to, "subject": subject, "body": body})
        logger.info(f"Email queued to {to}: {subject}")


class EmailSubscriber:
    """Emails the advising office about a low GPA alert"""

    def __init__(self, sender, recipient: str = "advising@university.edu"):
        self.sender = sender
        self.recipient = recipient

    def __call__(self, event: AlertEvent):
        self.sender.send(
            self.recipient,
            f"Academic alert for student {event.student_id}",
            f"GPA fell below the alert threshold ({event.describe_change()}) "
            f"at {event.timestamp.isoformat()}.",
        )


def build_channel(store, url: Optional[str] = config.NOTIFICATION_WEBHOOK_URL) -> NotificationChannel:
    """Webhook channel when a URL is configured, otherwise the in-process bus"""
    if url:
        logger.info(f"Publishing alerts to webhook {url}")
        return WebhookChannel(url)
    channel = InProcessChannel()
    channel.subscribe(LOW_GPA_ALERT, AdvisorTaskSubscriber(store))
    channel.subscribe(LOW_GPA_ALERT, EmailSubscriber(LoggingEmailSender()))
    return channel
