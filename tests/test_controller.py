"""
Unit tests for the lifecycle controller (snapsync/controller.py).
"""

import pytest

from snapsync.controller import Aborted, Controller, ControllerBuilder, abort


class Job:
    """Scope object handed to handlers."""

    def __init__(self):
        self.events = []


def recording_controller(failure_handled=False):
    """Controller recording every lifecycle event on the job it runs."""
    builder = ControllerBuilder()
    builder.on("prepare", lambda job: job.events.append("prepare"))
    builder.on("success", lambda job: job.events.append("success"))
    if failure_handled:
        builder.on("failure", lambda job, error: job.events.append(("failure", str(error))))
    builder.on("finish", lambda job: job.events.append("finish"))
    return builder.build()


class TestFire:
    """Test firing events."""

    def test_handlers_run_in_registration_order(self):
        calls = []
        builder = ControllerBuilder()
        builder.on("event", lambda: calls.append(1))
        builder.on("event", lambda: calls.append(2))
        builder.on("event", lambda: calls.append(3))
        controller = builder.build()

        assert controller.fire("event") is True
        assert calls == [1, 2, 3]

    def test_duplicate_handlers_run_each_time_registered(self):
        calls = []

        def handler():
            calls.append("x")

        builder = ControllerBuilder()
        builder.on("event", handler)
        builder.on("event", handler)
        controller = builder.build()

        controller.fire("event")
        assert calls == ["x", "x"]

    def test_unregistered_event_returns_false(self):
        calls = []
        builder = ControllerBuilder()
        builder.on("other", lambda: calls.append(1))
        controller = builder.build()

        assert controller.fire("event") is False
        assert calls == []

    def test_scope_and_arguments_are_passed_explicitly(self):
        received = []
        builder = ControllerBuilder()
        builder.on("event", lambda scope, a, b: received.append((scope, a, b)))
        controller = builder.build()

        controller.fire("event", "scope", 1, 2)
        assert received == [("scope", 1, 2)]

    def test_without_scope_handlers_get_no_arguments(self):
        received = []
        builder = ControllerBuilder()
        builder.on("event", lambda *args: received.append(args))
        controller = builder.build()

        controller.fire("event", None, 1, 2)
        assert received == [()]

    def test_decorator_registration(self):
        builder = ControllerBuilder()

        @builder.on("event")
        def handler(scope):
            scope.events.append("handled")

        job = Job()
        builder.build().fire("event", job)
        assert job.events == ["handled"]
        assert handler is not None


class TestBuilder:
    """Test the two-phase builder."""

    def test_registration_after_build_fails(self):
        builder = ControllerBuilder()
        builder.build()

        with pytest.raises(RuntimeError):
            builder.on("event", lambda: None)

    def test_build_twice_fails(self):
        builder = ControllerBuilder()
        builder.build()

        with pytest.raises(RuntimeError):
            builder.build()

    def test_controller_events_are_read_only(self):
        controller = Controller.build(lambda b: b.on("event", lambda: None))

        with pytest.raises(TypeError):
            controller.events["other"] = ()
        assert len(controller.events["event"]) == 1


class TestTry:
    """Test guarded execution."""

    def test_successful_work(self):
        job = Job()
        controller = recording_controller()

        result = controller.try_(lambda: job.events.append("work") or 42, job)

        assert result == 42
        assert job.events == ["prepare", "work", "success", "finish"]

    def test_abort_skips_success_but_not_finish(self):
        job = Job()
        controller = recording_controller()

        def work():
            job.events.append("work")
            return controller.abort()

        assert controller.try_(work, job) is None
        assert job.events == ["prepare", "work", "finish"]
        assert controller.aborted is False

        # Non-persistent: the next try runs normally.
        controller.try_(lambda: None, job)
        assert job.events[-3:] == ["prepare", "success", "finish"]

    def test_persistent_abort_disables_future_tries(self):
        job = Job()
        controller = recording_controller()

        controller.try_(lambda: abort(persistent=True), job)
        assert controller.aborted is True
        assert job.events == ["prepare", "finish"]

        calls = []
        assert controller.try_(lambda: calls.append(1), job) is None
        assert calls == []
        assert job.events == ["prepare", "finish"]

    def test_prepare_handler_can_abort(self):
        job = Job()
        builder = ControllerBuilder()
        builder.on("prepare", lambda job: Aborted())
        builder.on("success", lambda job: job.events.append("success"))
        builder.on("finish", lambda job: job.events.append("finish"))
        controller = builder.build()

        calls = []
        controller.try_(lambda: calls.append(1), job)

        assert calls == []
        assert job.events == ["finish"]

    def test_prepare_abort_skips_later_prepare_handlers(self):
        job = Job()
        builder = ControllerBuilder()
        builder.on("prepare", lambda job: abort())
        builder.on("prepare", lambda job: job.events.append("second prepare"))
        builder.on("finish", lambda job: job.events.append("finish"))
        controller = builder.build()

        controller.try_(lambda: job.events.append("work"), job)

        assert job.events == ["finish"]
        assert controller.aborted is False

    def test_persistent_abort_from_success_handler(self):
        job = Job()
        builder = ControllerBuilder()
        builder.on("success", lambda job: abort(persistent=True))
        builder.on("success", lambda job: job.events.append("second success"))
        builder.on("finish", lambda job: job.events.append("finish"))
        controller = builder.build()

        assert controller.try_(lambda: 42, job) is None
        assert job.events == ["finish"]
        assert controller.aborted is True

        controller.try_(lambda: job.events.append("work"), job)
        assert job.events == ["finish"]

    def test_fire_stops_at_aborting_handler(self):
        calls = []
        builder = ControllerBuilder()
        builder.on("event", lambda: abort())
        builder.on("event", lambda: calls.append(1))
        controller = builder.build()

        assert controller.fire("event") is True
        assert calls == []

    def test_unhandled_error_propagates_after_finish(self):
        job = Job()
        controller = recording_controller()

        def work():
            raise OSError("disk on fire")

        with pytest.raises(OSError, match="disk on fire"):
            controller.try_(work, job)
        assert job.events == ["prepare", "finish"]

    def test_handled_error_is_swallowed_after_finish(self):
        job = Job()
        controller = recording_controller(failure_handled=True)

        def work():
            raise OSError("disk on fire")

        assert controller.try_(work, job) is None
        assert job.events == ["prepare", ("failure", "disk on fire"), "finish"]

    def test_error_in_failure_handler_propagates(self):
        job = Job()
        builder = ControllerBuilder()

        def failing_handler(job, error):
            raise RuntimeError("handler broke") from error

        builder.on("failure", failing_handler)
        builder.on("finish", lambda job: job.events.append("finish"))
        controller = builder.build()

        def work():
            raise OSError("disk on fire")

        with pytest.raises(RuntimeError, match="handler broke"):
            controller.try_(work, job)
        assert job.events == ["finish"]

    def test_finish_fires_once_per_try(self):
        job = Job()
        controller = recording_controller(failure_handled=True)

        def failing():
            raise ValueError("bad")

        controller.try_(lambda: None, job)
        controller.try_(controller.abort, job)
        controller.try_(failing, job)

        assert job.events.count("finish") == 3
