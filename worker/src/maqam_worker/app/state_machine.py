"""Pure transition table for the playback session lifecycle."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple

from ..services.exceptions import InvalidTransition
from .models import SessionState


class SessionEvent(str, Enum):
    REQUEST_START = "request_start"
    START_REJECTED = "start_rejected"
    SCHEDULED = "scheduled"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    DURATION_ELAPSED = "duration_elapsed"
    TEARDOWN_COMPLETE = "teardown_complete"
    FATAL_ERROR = "fatal_error"


class Effect(str, Enum):
    START_PATTERNS = "start_patterns"
    START_TRANSPORT = "start_transport"
    START_CAPTURE = "start_capture"
    ARM_AUTO_STOP = "arm_auto_stop"
    RECORD_PAUSE_POSITION = "record_pause_position"
    PAUSE_TRANSPORT = "pause_transport"
    DISARM_AUTO_STOP = "disarm_auto_stop"
    CANCEL_PATTERNS = "cancel_patterns"
    CANCEL_TRANSPORT = "cancel_transport"
    STOP_CAPTURE = "stop_capture"
    DISPOSE_TRANSPORT = "dispose_transport"
    FINALIZE_ARTIFACT = "finalize_artifact"
    REPORT_ERROR = "report_error"


Transition = Tuple[SessionState, Tuple[Effect, ...]]

_TEARDOWN: Tuple[Effect, ...] = (
    Effect.DISARM_AUTO_STOP,
    Effect.CANCEL_PATTERNS,
    Effect.CANCEL_TRANSPORT,
    Effect.PAUSE_TRANSPORT,
    Effect.STOP_CAPTURE,
    Effect.DISPOSE_TRANSPORT,
)
_ACTIVE = (SessionState.GENERATING, SessionState.PLAYING, SessionState.PAUSED)

TRANSITIONS: Dict[Tuple[SessionState, SessionEvent], Transition] = {
    (SessionState.IDLE, SessionEvent.REQUEST_START): (
        SessionState.GENERATING,
        (
            Effect.START_PATTERNS,
            Effect.START_TRANSPORT,
            Effect.START_CAPTURE,
            Effect.ARM_AUTO_STOP,
        ),
    ),
    (SessionState.IDLE, SessionEvent.START_REJECTED): (SessionState.IDLE, (Effect.REPORT_ERROR,)),
    (SessionState.IDLE, SessionEvent.STOP): (SessionState.IDLE, ()),
    (SessionState.IDLE, SessionEvent.DURATION_ELAPSED): (SessionState.IDLE, ()),
    (SessionState.IDLE, SessionEvent.FATAL_ERROR): (SessionState.IDLE, (Effect.REPORT_ERROR,)),
    (SessionState.GENERATING, SessionEvent.SCHEDULED): (SessionState.PLAYING, ()),
    (SessionState.PLAYING, SessionEvent.PAUSE): (
        SessionState.PAUSED,
        (Effect.RECORD_PAUSE_POSITION, Effect.PAUSE_TRANSPORT),
    ),
    (SessionState.PAUSED, SessionEvent.RESUME): (SessionState.PLAYING, (Effect.START_TRANSPORT,)),
    (SessionState.PAUSED, SessionEvent.PAUSE): (SessionState.PAUSED, ()),
    (SessionState.PLAYING, SessionEvent.RESUME): (SessionState.PLAYING, ()),
    (SessionState.STOPPED, SessionEvent.TEARDOWN_COMPLETE): (SessionState.IDLE, ()),
    (SessionState.STOPPED, SessionEvent.STOP): (SessionState.STOPPED, ()),
}

for _state in _ACTIVE:
    for _event in (SessionEvent.STOP, SessionEvent.DURATION_ELAPSED):
        TRANSITIONS[(_state, _event)] = (SessionState.STOPPED, _TEARDOWN + (Effect.FINALIZE_ARTIFACT,))
    TRANSITIONS[(_state, SessionEvent.FATAL_ERROR)] = (
        SessionState.IDLE,
        _TEARDOWN + (Effect.REPORT_ERROR,),
    )
TRANSITIONS[(SessionState.STOPPED, SessionEvent.FATAL_ERROR)] = (
    SessionState.IDLE,
    (Effect.REPORT_ERROR,),
)


def transition(state: SessionState, event: SessionEvent) -> Transition:
    """Return the next state and the effects to run, or raise ``InvalidTransition``."""

    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state.value, event.value) from None
