"""Upload lifecycle finite state machine for local records.

Each status change gets a throwaway FSM instance positioned at the record's
current ``upload_status``.  Used to validate transition legality before
:class:`~formsync.database.LocalRecordStore` persists the change.

The FSM is purely a validation tool -- it does NOT perform DB writes or
have on_enter_state callbacks.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from formsync.exceptions import InvalidTransitionError


class RecordLifecycleSM(StateMachine):
    """Four-state lifecycle of a local record's journey to the remote side.

    States:
        pending   -- Written locally, no remote call made yet.
        uploading -- An orchestrator attempt is (or was, before a crash) running.
        completed -- Remote document and all field children committed.
        error     -- The last attempt failed; retriable.

    ``completed`` is terminal: a completed record is safe to prune and
    can never be re-driven.
    """

    pending = State("pending", initial=True, value="pending")
    uploading = State("uploading", value="uploading")
    completed = State("completed", value="completed", final=True)
    error = State("error", value="error")

    start_upload = pending.to(uploading)
    complete = uploading.to(completed)
    fail = uploading.to(error)
    retry = error.to(uploading)


# (current, target) -> event name
_EVENTS: dict[tuple[str, str], str] = {
    ("pending", "uploading"): "start_upload",
    ("uploading", "completed"): "complete",
    ("uploading", "error"): "fail",
    ("error", "uploading"): "retry",
}


def create_fsm(current_state: str) -> RecordLifecycleSM:
    """Create an FSM instance at the given state.

    Args:
        current_state: One of 'pending', 'uploading', 'completed', 'error'.

    Returns:
        A RecordLifecycleSM positioned at *current_state*.
    """
    return RecordLifecycleSM(start_value=current_state)


def transition_event(record_id: str, current: str, target: str) -> str:
    """Validate ``current -> target`` and return the FSM event that performs it.

    Raises:
        InvalidTransitionError: If the edge does not exist in the lifecycle.
    """
    event = _EVENTS.get((current, target))
    if event is None:
        raise InvalidTransitionError(record_id, current, target)

    sm = create_fsm(current)
    try:
        sm.send(event)
    except TransitionNotAllowed as exc:
        raise InvalidTransitionError(record_id, current, target) from exc
    return event
