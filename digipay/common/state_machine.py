"""Order lifecycle transitions enforced by the engine.

`AWAITING_PAYMENT` and `PENDING` may also move straight to `PROCESS` or
`FAILED`: a provider may call back before the session fields were persisted.
Self-transitions are not listed; callers treat them as no-ops.
"""

AWAITING_PAYMENT = "AWAITING_PAYMENT"
PENDING = "PENDING"
PROCESS = "PROCESS"
SUCCESS = "SUCCESS"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
DISCREPANCY = "DISCREPANCY"
REJECTED = "REJECTED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    AWAITING_PAYMENT: {PENDING, PROCESS, FAILED, DISCREPANCY, REJECTED},
    PENDING: {PROCESS, FAILED, DISCREPANCY, REJECTED},
    PROCESS: {SUCCESS, COMPLETED, DISCREPANCY},
    SUCCESS: set(),
    COMPLETED: set(),
    FAILED: set(),
    DISCREPANCY: set(),
    REJECTED: set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)
SESSION_ELIGIBLE_STATES = frozenset({AWAITING_PAYMENT, PENDING})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES
