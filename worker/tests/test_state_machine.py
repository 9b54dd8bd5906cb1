from __future__ import annotations

import pytest

from maqam_worker.app.models import SessionState
from maqam_worker.app.state_machine import TRANSITIONS, Effect, SessionEvent, transition
from maqam_worker.services.exceptions import InvalidTransition


def test_start_runs_setup_effects_in_order() -> None:
    state, effects = transition(SessionState.IDLE, SessionEvent.REQUEST_START)
    assert state is SessionState.GENERATING
    assert effects == (
        Effect.START_PATTERNS,
        Effect.START_TRANSPORT,
        Effect.START_CAPTURE,
        Effect.ARM_AUTO_STOP,
    )
    assert transition(state, SessionEvent.SCHEDULED)[0] is SessionState.PLAYING


def test_pause_records_position_before_pausing() -> None:
    state, effects = transition(SessionState.PLAYING, SessionEvent.PAUSE)
    assert state is SessionState.PAUSED
    assert effects == (Effect.RECORD_PAUSE_POSITION, Effect.PAUSE_TRANSPORT)
    assert transition(state, SessionEvent.RESUME) == (SessionState.PLAYING, (Effect.START_TRANSPORT,))


@pytest.mark.parametrize("state", [SessionState.GENERATING, SessionState.PLAYING, SessionState.PAUSED])
@pytest.mark.parametrize("event", [SessionEvent.STOP, SessionEvent.DURATION_ELAPSED])
def test_stop_tears_down_then_finalizes(state: SessionState, event: SessionEvent) -> None:
    new_state, effects = transition(state, event)
    assert new_state is SessionState.STOPPED
    assert effects[0] is Effect.DISARM_AUTO_STOP
    assert effects[-1] is Effect.FINALIZE_ARTIFACT
    assert effects.index(Effect.CANCEL_PATTERNS) < effects.index(Effect.CANCEL_TRANSPORT)
    assert effects.index(Effect.STOP_CAPTURE) < effects.index(Effect.DISPOSE_TRANSPORT)


@pytest.mark.parametrize("state", [SessionState.GENERATING, SessionState.PLAYING, SessionState.PAUSED])
def test_fatal_error_returns_to_idle_with_teardown(state: SessionState) -> None:
    new_state, effects = transition(state, SessionEvent.FATAL_ERROR)
    assert new_state is SessionState.IDLE
    assert Effect.DISPOSE_TRANSPORT in effects
    assert effects[-1] is Effect.REPORT_ERROR
    assert Effect.FINALIZE_ARTIFACT not in effects


def test_idle_stop_is_noop_and_stopped_settles_to_idle() -> None:
    assert transition(SessionState.IDLE, SessionEvent.STOP) == (SessionState.IDLE, ())
    assert transition(SessionState.STOPPED, SessionEvent.STOP) == (SessionState.STOPPED, ())
    assert transition(SessionState.STOPPED, SessionEvent.TEARDOWN_COMPLETE) == (SessionState.IDLE, ())


def test_rejected_start_stays_idle() -> None:
    assert transition(SessionState.IDLE, SessionEvent.START_REJECTED) == (
        SessionState.IDLE,
        (Effect.REPORT_ERROR,),
    )


@pytest.mark.parametrize(
    ("state", "event"),
    [
        (SessionState.IDLE, SessionEvent.PAUSE),
        (SessionState.IDLE, SessionEvent.RESUME),
        (SessionState.PLAYING, SessionEvent.REQUEST_START),
        (SessionState.STOPPED, SessionEvent.PAUSE),
        (SessionState.GENERATING, SessionEvent.PAUSE),
    ],
)
def test_invalid_transitions_raise(state: SessionState, event: SessionEvent) -> None:
    with pytest.raises(InvalidTransition) as excinfo:
        transition(state, event)
    assert excinfo.value.state == state.value
    assert excinfo.value.event == event.value


def test_every_transition_targets_a_known_state() -> None:
    for (state, event), (target, effects) in TRANSITIONS.items():
        assert isinstance(target, SessionState)
        assert all(isinstance(effect, Effect) for effect in effects)
