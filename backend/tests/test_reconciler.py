import pytest

from smarthome.core.errors import StoreUnavailable, ValidationError
from smarthome.schemas.state import StateDocument, TimerRecord, default_state
from smarthome.services.reconciler import ARMED, IDLE, TimerReconciler
from smarthome.services.store import SqlDocumentStore

from conftest import ROOT, START_MS, read_state


def seed(store, **outputs):
    state = default_state()
    state.device_outputs.update(outputs)
    store.write(ROOT, state.to_wire())


def persisted_timer(timer_id="timer_persisted", devices=("led1",), action="on", started_at=START_MS, duration=5):
    return TimerRecord(
        id=timer_id,
        devices=list(devices),
        action=action,
        duration=duration,
        started_at=started_at,
        ends_at=started_at + duration * 1000,
    )


class FlakyStore(SqlDocumentStore):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.fail_merges = False
        self.fail_writes = False

    def write(self, path, value):
        if self.fail_writes:
            raise StoreUnavailable("connection reset")
        super().write(path, value)

    def merge(self, path, fields):
        if self.fail_merges:
            raise StoreUnavailable("connection reset")
        super().merge(path, fields)


class TestSchedule:
    def test_persists_absolute_deadline(self, store, reconciler, clock):
        seed(store)
        record = reconciler.schedule(["led2"], 2, "off")

        timer = read_state(store).timer
        assert timer == record
        assert timer.active is True
        assert timer.started_at == clock.now
        assert timer.ends_at == clock.now + 2000

    def test_duplicate_devices_are_collapsed(self, store, reconciler):
        record = reconciler.schedule(["led1", "led3", "led1"], 10, "on")
        assert record.devices == ["led1", "led3"]

    @pytest.mark.parametrize(
        "devices, duration, action",
        [
            ([], 5, "on"),
            (["led9"], 5, "on"),
            (["tv"], 5, "on"),
            ("led1", 5, "on"),
            (["led1"], 0, "on"),
            (["led1"], 86401, "on"),
            (["led1"], 1.5, "on"),
            (["led1"], "5", "on"),
            (["led1"], True, "on"),
            (["led1"], None, "on"),
            (["led1"], 5, "toggle"),
        ],
    )
    def test_rejects_invalid_requests_before_persisting(self, store, reconciler, devices, duration, action):
        seed(store)
        with pytest.raises(ValidationError):
            reconciler.schedule(devices, duration, action)
        assert read_state(store).timer is None

    def test_duration_bounds_are_inclusive(self, reconciler):
        assert reconciler.schedule(["led1"], 1, "on").duration == 1
        assert reconciler.schedule(["led1"], 86400, "on").duration == 86400

    def test_last_request_wins(self, store, reconciler, scheduler):
        seed(store)
        records = [reconciler.schedule(["led1"], 10 + index, "on") for index in range(5)]
        for _ in records:
            reconciler.on_snapshot(read_state(store))

        timer = read_state(store).timer
        assert timer.active is True
        assert timer.id == records[-1].id
        assert len(scheduler.live) == 1
        assert reconciler.armed.timer_id == records[-1].id

    def test_store_failure_is_raised(self, session_factory, clock, scheduler):
        store = FlakyStore(session_factory)
        store.fail_writes = True
        reconciler = TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)
        with pytest.raises(StoreUnavailable):
            reconciler.schedule(["led1"], 5, "on")
        assert reconciler.state == IDLE

    def test_failed_persist_keeps_previous_countdown(self, session_factory, clock, scheduler):
        store = FlakyStore(session_factory)
        seed(store)
        reconciler = TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)
        previous = reconciler.schedule(["led1"], 5, "on")
        reconciler.on_snapshot(read_state(store))

        store.fail_writes = True
        with pytest.raises(StoreUnavailable):
            reconciler.schedule(["led2"], 5, "on")
        store.fail_writes = False

        assert reconciler.armed.timer_id == previous.id
        clock.advance(5000)
        assert scheduler.run_due() == 1

        state = read_state(store)
        assert state.device_outputs["led1"] is True
        assert state.device_outputs["led2"] is False
        assert state.timer is None


class TestSnapshots:
    def test_schedule_and_fire(self, store, reconciler, clock, scheduler):
        seed(store, led2=True)
        reconciler.schedule(["led2"], 2, "off")
        reconciler.on_snapshot(read_state(store))
        assert reconciler.state == ARMED

        clock.advance(1999)
        assert scheduler.run_due() == 0
        clock.advance(1)
        assert scheduler.run_due() == 1

        state = read_state(store)
        assert state.device_outputs["led2"] is False
        assert state.timer is None
        assert reconciler.state == IDLE

    def test_redundant_notifications_arm_once(self, store, reconciler, scheduler):
        seed(store)
        reconciler.schedule(["led1"], 30, "on")
        snapshot = read_state(store)

        reconciler.on_snapshot(snapshot)
        reconciler.on_snapshot(snapshot)
        reconciler.on_snapshot(read_state(store))

        assert len(scheduler.calls) == 1

    def test_deadline_is_recomputed_on_start(self, store, clock, scheduler):
        seed(store)
        store.write(f"{ROOT}/timer", persisted_timer(started_at=clock.now, duration=5).to_wire())

        clock.advance(3000)
        fresh = TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)
        fresh.on_snapshot(read_state(store))

        assert fresh.state == ARMED
        assert scheduler.live[0].delay == pytest.approx(2.0)

    def test_crash_recovery_executes_expired_timer_immediately(self, store, clock, scheduler):
        seed(store)
        store.merge(ROOT, {"kill": True})
        expired = persisted_timer(started_at=clock.now - 6000, duration=5, action="on")
        store.write(f"{ROOT}/timer", expired.to_wire())

        fresh = TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)
        fresh.on_snapshot(read_state(store))

        state = read_state(store)
        assert state.device_outputs["led1"] is True
        assert state.kill_switch is False
        assert state.timer is None
        assert scheduler.calls == []
        assert fresh.state == IDLE

    def test_expired_snapshot_applies_once(self, store, reconciler, clock):
        seed(store)
        store.write(f"{ROOT}/timer", persisted_timer(started_at=clock.now - 10000, action="on").to_wire())
        stale = read_state(store)

        reconciler.on_snapshot(stale)
        first = read_state(store)
        assert first.device_outputs["led1"] is True

        # someone turns it off again; replaying the old snapshot must not undo that
        store.merge(ROOT, {"led1": False})
        reconciler.on_snapshot(stale)

        assert read_state(store).device_outputs["led1"] is False
        assert read_state(store).timer is None

    def test_supersede_only_runs_latest_timer(self, store, reconciler, clock, scheduler):
        seed(store)
        reconciler.schedule(["led1"], 10, "on")
        reconciler.on_snapshot(read_state(store))
        first_call = scheduler.live[0]

        reconciler.schedule(["led2"], 5, "on")
        reconciler.on_snapshot(read_state(store))
        assert first_call.cancelled

        clock.advance(10000)
        assert scheduler.run_due() == 1
        # a countdown thread that lost the race with cancel() still fires
        first_call.callback()

        state = read_state(store)
        assert state.device_outputs["led2"] is True
        assert state.device_outputs["led1"] is False
        assert read_state(store).timer is None
        assert reconciler.state == IDLE

    def test_cleared_timer_disarms(self, store, reconciler, scheduler):
        seed(store)
        reconciler.schedule(["led3"], 60, "on")
        reconciler.on_snapshot(read_state(store))

        store.write(f"{ROOT}/timer", None)
        reconciler.on_snapshot(read_state(store))

        assert reconciler.state == IDLE
        assert scheduler.live == []

    def test_missing_document_is_idle(self, reconciler):
        reconciler.on_snapshot(None)
        reconciler.on_snapshot(StateDocument())
        assert reconciler.state == IDLE

    def test_expiry_revalidates_against_store(self, store, reconciler, clock, scheduler):
        seed(store)
        reconciler.schedule(["led1"], 5, "on")
        reconciler.on_snapshot(read_state(store))

        # a peer superseded the timer but the notification has not arrived yet
        peer = persisted_timer(timer_id="timer_peer", devices=("led3",), started_at=clock.now, duration=60)
        store.write(f"{ROOT}/timer", peer.to_wire())

        clock.advance(5000)
        scheduler.run_due()

        state = read_state(store)
        assert state.device_outputs["led1"] is False
        assert state.timer.id == "timer_peer"

    def test_failed_execution_is_logged_not_raised(self, session_factory, clock, scheduler, caplog):
        store = FlakyStore(session_factory)
        seed(store, led1=True)
        reconciler = TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)
        reconciler.schedule(["led1"], 1, "off")
        reconciler.on_snapshot(read_state(store))

        store.fail_merges = True
        clock.advance(1000)
        scheduler.run_due()

        assert "could not be executed" in caplog.text
        assert reconciler.state == IDLE
        assert read_state(store).device_outputs["led1"] is True


class TestCancelAndStatus:
    def test_cancel_clears_record_and_countdown(self, store, reconciler, scheduler):
        seed(store)
        reconciler.schedule(["led1"], 30, "off")
        reconciler.on_snapshot(read_state(store))

        reconciler.cancel()

        assert reconciler.state == IDLE
        assert scheduler.live == []
        assert read_state(store).timer is None

    def test_failed_cancel_keeps_countdown(self, session_factory, clock, scheduler):
        store = FlakyStore(session_factory)
        seed(store)
        reconciler = TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)
        record = reconciler.schedule(["led3"], 30, "on")
        reconciler.on_snapshot(read_state(store))

        store.fail_writes = True
        with pytest.raises(StoreUnavailable):
            reconciler.cancel()

        assert reconciler.armed.timer_id == record.id
        assert read_state(store).timer.id == record.id

    def test_status_reports_remaining_time(self, store, reconciler, clock):
        seed(store)
        record = reconciler.schedule(["led1"], 10, "on")
        clock.advance(2500)

        status = reconciler.timer_status()
        assert status["active"] is True
        assert status["id"] == record.id
        assert status["remainingMs"] == 7500
        assert status["remaining"] == 8

    def test_status_treats_expired_timer_as_inactive(self, store, reconciler, clock):
        seed(store)
        reconciler.schedule(["led1"], 10, "on")
        clock.advance(10000)

        assert reconciler.timer_status() == {"active": False}

    def test_status_without_timer(self, store, reconciler):
        seed(store)
        assert reconciler.timer_status() == {"active": False}
