"""Transfer lifecycle finite state machine for the resumable upload engine.

Each upload gets its own FSM instance.  The controller fires an event for
every step it takes; an event that is illegal from the current state raises
``TransitionNotAllowed``, so a controller bug cannot, for example, move an
aborted upload to completed.

The FSM is purely a validation tool -- it performs no I/O and has no
on_enter_state callbacks.
"""

from __future__ import annotations

from statemachine import State, StateMachine

from drivelib.models import TransferStatus


class TransferLifecycleSM(StateMachine):
    """Six-state lifecycle of one resumable upload.

    States:
        negotiating  -- Opening an upload session.
        probing      -- Asking the session for its confirmed offset.
        transmitting -- Streaming the remaining bytes.
        completed    -- The store returned the finished resource.
        failed       -- A fatal error, or retries ran out.
        aborted      -- The caller cancelled the upload.

    The three terminal states are ``final=True`` and have no outgoing
    transitions, matching :attr:`TransferStatus.terminal`.
    """

    negotiating = State("negotiating", initial=True, value=TransferStatus.NEGOTIATING.value)
    probing = State("probing", value=TransferStatus.PROBING.value)
    transmitting = State("transmitting", value=TransferStatus.TRANSMITTING.value)
    completed = State("completed", value=TransferStatus.COMPLETED.value, final=True)
    failed = State("failed", value=TransferStatus.FAILED.value, final=True)
    aborted = State("aborted", value=TransferStatus.ABORTED.value, final=True)

    session_opened = negotiating.to(probing)
    start_transmit = probing.to(transmitting)
    retry = transmitting.to(probing) | probing.to(probing)
    renegotiate = probing.to(negotiating) | transmitting.to(negotiating)
    complete = probing.to(completed) | transmitting.to(completed)
    fail = negotiating.to(failed) | probing.to(failed) | transmitting.to(failed)
    abort = negotiating.to(aborted) | probing.to(aborted) | transmitting.to(aborted)


def create_fsm(current_status: TransferStatus | str = TransferStatus.NEGOTIATING) -> TransferLifecycleSM:
    """Create an FSM instance at the given status.

    Args:
        current_status: A :class:`TransferStatus` or its string value.

    Returns:
        A TransferLifecycleSM positioned at *current_status*.
    """
    return TransferLifecycleSM(start_value=TransferStatus(current_status).value)
