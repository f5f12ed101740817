from __future__ import annotations

from threading import Event

from hypothesis import given, strategies as st
import pytest

from automerger.models import RetryOutcome
from automerger.retry import MergeCancelledError, raise_if_stopped, run_with_retries


class ScriptedAttempts:
    def __init__(self, outcomes: list[RetryOutcome]) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    def __call__(self) -> RetryOutcome:
        self.calls += 1
        return self._outcomes.pop(0)


class ExhaustionCounter:
    def __init__(self) -> None:
        self.count = 0

    def __call__(self) -> None:
        self.count += 1


def test_immediate_success_returns_true_without_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("automerger.retry.time.sleep", sleeps.append)
    immediate = ScriptedAttempts(["success"])
    retry = ScriptedAttempts([])
    exhausted = ExhaustionCounter()

    assert run_with_retries(3, 5.0, immediate, retry, exhausted) is True
    assert immediate.calls == 1
    assert retry.calls == 0
    assert sleeps == []
    assert exhausted.count == 0


def test_immediate_failure_never_invokes_retry_attempt() -> None:
    immediate = ScriptedAttempts(["failure"])
    retry = ScriptedAttempts([])
    exhausted = ExhaustionCounter()

    assert run_with_retries(5, 0, immediate, retry, exhausted) is False
    assert retry.calls == 0
    assert exhausted.count == 0


def test_retry_attempt_failure_stops_loop() -> None:
    immediate = ScriptedAttempts(["retry"])
    retry = ScriptedAttempts(["retry", "failure", "success"])
    exhausted = ExhaustionCounter()

    assert run_with_retries(5, 0, immediate, retry, exhausted) is False
    assert retry.calls == 2
    assert exhausted.count == 0


def test_sleeps_between_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("automerger.retry.time.sleep", sleeps.append)
    immediate = ScriptedAttempts(["retry"])
    retry = ScriptedAttempts(["retry", "success"])

    assert run_with_retries(3, 2.5, immediate, retry, ExhaustionCounter()) is True
    assert sleeps == [2.5, 2.5]


@given(st.integers(min_value=2, max_value=12))
def test_success_on_last_allowed_attempt(max_attempts: int) -> None:
    immediate = ScriptedAttempts(["retry"])
    retry = ScriptedAttempts(["retry"] * (max_attempts - 2) + ["success"])
    exhausted = ExhaustionCounter()

    assert run_with_retries(max_attempts, 0, immediate, retry, exhausted) is True
    assert immediate.calls + retry.calls == max_attempts
    assert exhausted.count == 0


@given(st.integers(min_value=1, max_value=12))
def test_exhaustion_fires_once_and_returns_false(max_attempts: int) -> None:
    immediate = ScriptedAttempts(["retry"])
    retry = ScriptedAttempts(["retry"] * max_attempts)
    exhausted = ExhaustionCounter()

    assert run_with_retries(max_attempts, 0, immediate, retry, exhausted) is False
    assert immediate.calls + retry.calls == max_attempts
    assert exhausted.count == 1


def test_rejects_non_positive_attempt_bound() -> None:
    with pytest.raises(ValueError, match="max_attempts must be >= 1"):
        run_with_retries(0, 0, ScriptedAttempts([]), ScriptedAttempts([]), ExhaustionCounter())


def test_stop_event_cancels_waiting_loop() -> None:
    stop_event = Event()
    stop_event.set()
    retry = ScriptedAttempts(["success"])

    with pytest.raises(MergeCancelledError, match="Stop requested"):
        run_with_retries(
            3,
            30.0,
            ScriptedAttempts(["retry"]),
            retry,
            ExhaustionCounter(),
            stop_event=stop_event,
        )
    assert retry.calls == 0


def test_stop_event_not_set_waits_and_continues() -> None:
    retry = ScriptedAttempts(["success"])

    assert (
        run_with_retries(
            2,
            0.01,
            ScriptedAttempts(["retry"]),
            retry,
            ExhaustionCounter(),
            stop_event=Event(),
        )
        is True
    )
    assert retry.calls == 1


def test_raise_if_stopped_only_raises_once_stop_is_requested() -> None:
    stop_event = Event()
    raise_if_stopped(None, before="merging")
    raise_if_stopped(stop_event, before="merging")

    stop_event.set()
    with pytest.raises(MergeCancelledError, match="^Stop requested before merging$"):
        raise_if_stopped(stop_event, before="merging")
