import time

import pytest
import requests
from sqlmodel import select

from conftest import RecordingChannel, make_student
from dispatcher import AlertDispatcher
from errors import ChannelError
from events import AlertEvent, LOW_GPA_ALERT
from models import AdvisorTask, AlertRecord
from notifications import (
    AdvisorTaskSubscriber, EmailSubscriber, InProcessChannel, LoggingEmailSender,
    NotificationChannel, PublishResult, WebhookChannel,
)


class FailingChannel(NotificationChannel):
    def __init__(self):
        self.calls = 0

    def publish(self, event):
        self.calls += 1
        raise ChannelError("broker unreachable")


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


class FakeHttpSession:
    """Answers each POST with the next queued status, repeating the last one"""

    def __init__(self, status_code=200, error=None, statuses=None):
        self.statuses = list(statuses or [status_code])
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.error:
            error, self.error = self.error, None
            raise error
        if len(self.statuses) > 1:
            return FakeResponse(self.statuses.pop(0))
        return FakeResponse(self.statuses[0])


def sample_event(student_id=1):
    return AlertEvent(student_id=student_id, previous_gpa=2.1, new_gpa=1.8)


# ============= DISPATCHER =============

def test_dispatch_logs_and_publishes(session, store, dispatcher, channel):
    student = make_student(session)

    event = dispatcher.dispatch(student.id, 2.1, 1.8)
    assert dispatcher.flush(timeout=5)

    assert event.student_id == student.id
    assert [e.event_id for e in channel.events] == [event.event_id]
    records = session.exec(select(AlertRecord)).all()
    assert len(records) == 1
    assert records[0].new_gpa == 1.8
    assert records[0].previous_gpa == 2.1
    assert records[0].source == "trigger"


def test_one_event_per_student_within_an_operation(session, dispatcher, channel):
    student = make_student(session)

    with dispatcher.operation():
        first = dispatcher.dispatch(student.id, 2.1, 1.8)
        second = dispatcher.dispatch(student.id, 2.1, 1.8)
        with dispatcher.operation():
            third = dispatcher.dispatch(student.id, 2.0, 1.5)
    dispatcher.flush(timeout=5)

    assert first is not None
    assert second is None
    assert third is None
    assert len(channel.events) == 1


def test_separate_operations_are_not_deduplicated(session, dispatcher, channel):
    student = make_student(session)

    with dispatcher.operation():
        dispatcher.dispatch(student.id, 2.1, 1.8)
    with dispatcher.operation():
        dispatcher.dispatch(student.id, 2.3, 1.9)
    dispatcher.flush(timeout=5)

    assert len(channel.events) == 2


def test_channel_failure_never_reaches_caller(session, store, caplog):
    student = make_student(session)
    channel = FailingChannel()
    dispatcher = AlertDispatcher(store, channel, max_workers=1)
    try:
        event = dispatcher.dispatch(student.id, 2.1, 1.8)
        assert dispatcher.flush(timeout=5)
    finally:
        dispatcher.shutdown()

    assert event is not None
    assert channel.calls == 1
    assert "broker unreachable" in caplog.text
    # The alert is still in the durable log
    assert len(session.exec(select(AlertRecord)).all()) == 1


def test_retry_later_is_logged(session, store, caplog):
    student = make_student(session)
    dispatcher = AlertDispatcher(store, RecordingChannel(PublishResult.RETRY_LATER), max_workers=1)
    try:
        dispatcher.dispatch(student.id, 2.1, 1.8)
        dispatcher.flush(timeout=5)
    finally:
        dispatcher.shutdown()

    assert "redelivered by the channel" in caplog.text


# ============= IN-PROCESS CHANNEL =============

def test_in_process_channel_delivers_to_subscribers():
    channel = InProcessChannel()
    received = []
    channel.subscribe(LOW_GPA_ALERT, received.append)
    channel.subscribe("academic.other", lambda event: pytest.fail("wrong topic"))

    assert channel.publish(sample_event()) == PublishResult.ACK
    assert len(received) == 1


def test_in_process_channel_retries_failed_delivery():
    channel = InProcessChannel(max_retries=5)
    attempts = []

    def flaky(event):
        attempts.append(event.event_id)
        if len(attempts) < 2:
            raise RuntimeError("mail server down")

    channel.subscribe(LOW_GPA_ALERT, flaky)

    assert channel.publish(sample_event()) == PublishResult.RETRY_LATER
    assert channel.pending_count == 1
    assert channel.retry_pending() == 1
    assert channel.pending_count == 0
    assert len(attempts) == 2


def test_in_process_channel_dead_letters_after_max_retries():
    channel = InProcessChannel(max_retries=3)

    def broken(event):
        raise RuntimeError("always down")

    channel.subscribe(LOW_GPA_ALERT, broken)
    event = sample_event()
    channel.publish(event)
    channel.retry_pending()
    channel.retry_pending()

    assert channel.pending_count == 0
    assert channel.dead_letters == [event]


# ============= SUBSCRIBERS =============

def test_advisor_task_subscriber_creates_task(session, store):
    student = make_student(session, advisor_id=77)
    event = AlertEvent(student_id=student.id, previous_gpa=2.1, new_gpa=1.8)

    AdvisorTaskSubscriber(store)(event)

    task = session.exec(select(AdvisorTask)).one()
    assert task.student_id == student.id
    assert task.advisor_id == 77
    assert task.event_id == event.event_id
    assert "2.10 -> 1.80" in task.subject


def test_email_subscriber_sends_message():
    sender = LoggingEmailSender()
    EmailSubscriber(sender, recipient="advising@example.edu")(sample_event(student_id=5))

    assert len(sender.outbox) == 1
    message = sender.outbox[0]
    assert message["to"] == "advising@example.edu"
    assert "student 5" in message["subject"]
    assert "1.80" in message["body"]


# ============= WEBHOOK CHANNEL =============

def test_webhook_channel_acknowledges_success():
    http = FakeHttpSession(status_code=202)
    channel = WebhookChannel("https://notify.example.edu/alerts", session=http)

    assert channel.publish(sample_event()) == PublishResult.ACK
    url, payload = http.posts[0]
    assert url == "https://notify.example.edu/alerts"
    assert payload["new_gpa"] == 1.8
    assert payload["event_type"] == LOW_GPA_ALERT


def test_webhook_channel_defers_on_server_error():
    channel = WebhookChannel("https://notify.example.edu/alerts", session=FakeHttpSession(status_code=503))
    assert channel.publish(sample_event()) == PublishResult.RETRY_LATER
    assert channel.pending_count == 1


def test_webhook_channel_defers_on_transport_failure():
    http = FakeHttpSession(error=requests.ConnectionError("refused"))
    channel = WebhookChannel("https://notify.example.edu/alerts", session=http)

    assert channel.publish(sample_event()) == PublishResult.RETRY_LATER
    assert channel.pending_count == 1
    assert channel.retry_pending() == 1
    assert len(http.posts) == 2


def test_deferred_webhook_alert_is_posted_again(session, store):
    student = make_student(session)
    http = FakeHttpSession(statuses=[503, 200])
    channel = WebhookChannel("https://notify.example.edu/alerts", session=http)
    dispatcher = AlertDispatcher(store, channel, max_workers=1)
    try:
        event = dispatcher.dispatch(student.id, 2.1, 1.8)
        assert dispatcher.flush(timeout=5)
        assert channel.pending_count == 1

        assert dispatcher.redeliver() == 1
    finally:
        dispatcher.shutdown()

    assert len(http.posts) == 2
    assert [payload["event_id"] for _, payload in http.posts] == [event.event_id, event.event_id]
    assert channel.pending_count == 0


def test_redelivery_loop_retries_without_batch_timer(session, store):
    student = make_student(session)
    http = FakeHttpSession(statuses=[429, 200])
    channel = WebhookChannel("https://notify.example.edu/alerts", session=http)
    dispatcher = AlertDispatcher(store, channel, max_workers=1)
    try:
        dispatcher.dispatch(student.id, 2.1, 1.8)
        dispatcher.flush(timeout=5)
        dispatcher.start_redelivery(interval=0.01)
        deadline = time.monotonic() + 5
        while channel.pending_count and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        dispatcher.shutdown()

    assert channel.pending_count == 0
    assert len(http.posts) == 2


def test_webhook_retry_gives_up_after_max_retries():
    http = FakeHttpSession(status_code=503)
    channel = WebhookChannel("https://notify.example.edu/alerts", session=http, max_retries=2)
    event = sample_event()

    channel.publish(event)
    channel.retry_pending()

    assert channel.pending_count == 0
    assert channel.dead_letters == [event]


def test_webhook_rejection_on_retry_is_dead_lettered():
    http = FakeHttpSession(statuses=[503, 400])
    channel = WebhookChannel("https://notify.example.edu/alerts", session=http)
    event = sample_event()

    channel.publish(event)
    assert channel.retry_pending() == 0
    assert channel.dead_letters == [event]


def test_webhook_channel_raises_on_client_error():
    channel = WebhookChannel("https://notify.example.edu/alerts", session=FakeHttpSession(status_code=400))
    with pytest.raises(ChannelError):
        channel.publish(sample_event())


def test_alert_event_is_immutable():
    event = sample_event()
    with pytest.raises(Exception):
        event.new_gpa = 3.0


def test_first_term_alert_has_no_previous_gpa():
    event = AlertEvent(student_id=3, new_gpa=0.0)
    assert event.previous_gpa is None
    assert event.describe_change() == "first GPA 0.00"
    assert sample_event().describe_change() == "2.10 -> 1.80"
