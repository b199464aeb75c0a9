import logging

from headend.core.models import DeploymentResult, DeploymentStage
from headend.services.event_sink import BufferedEventSink, LoggingEventSink


def test_buffered_sink_tracks_status_and_logs():
    sink = BufferedEventSink(max_logs=2)

    sink.on_progress(DeploymentStage.VM_CREATION, 1, 3)
    sink.on_log("first")
    sink.on_log("second")
    sink.on_log("third")

    status = sink.snapshot()
    assert (status.stage, status.current, status.total) == (DeploymentStage.VM_CREATION, 1, 3)
    assert status.logs == ["second", "third"]
    assert status.updated_at is not None
    assert not status.finished


def test_snapshot_is_detached_from_later_events():
    sink = BufferedEventSink()
    sink.on_log("one")

    status = sink.snapshot()
    sink.on_log("two")

    assert status.logs == ["one"]


def test_listeners_receive_events_and_failing_ones_are_dropped():
    sink = BufferedEventSink()
    received = []

    def broken(event_type, payload):
        raise RuntimeError("listener gone")

    sink.subscribe(lambda event_type, payload: received.append((event_type, payload)))
    sink.subscribe(broken)

    sink.on_progress(DeploymentStage.STARTUP, 2, 2)
    sink.on_result(DeploymentResult(success=True))

    assert received[0] == ("progress", {"stage": "startup", "current": 2, "total": 2})
    assert received[1][0] == "result"
    assert sink.snapshot().finished


def test_reset_clears_status():
    sink = BufferedEventSink()
    sink.on_log("line")
    sink.reset()

    assert sink.snapshot().logs == []


def test_logging_sink_reports_failure_as_warning(caplog):
    sink = LoggingEventSink()

    with caplog.at_level(logging.INFO, logger="headend.events"):
        sink.on_progress(DeploymentStage.ROLLBACK, 1, 2)
        sink.on_result(DeploymentResult(success=False, errors=["creating VM lab-router: boom"], rolled_back=True))

    assert "[rollback] 1/2" in caplog.text
    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "creating VM lab-router: boom" in warnings[0].getMessage()
