"""Application pipeline state machine.

The transition table is static and carries no authorization logic: callers
decide whether an override is granted and pass the result in as a flag.
Override bypasses the table but never the enumeration.
"""

from __future__ import annotations

from enum import Enum

from loan_intake.services.errors import InvalidTransitionError, ValidationError


class PipelineState(str, Enum):
    NEW = "NEW"
    REQUIRES_DOCS = "REQUIRES_DOCS"
    UNDER_REVIEW = "UNDER_REVIEW"
    LENDER_SUBMITTED = "LENDER_SUBMITTED"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"


TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.NEW: frozenset({PipelineState.REQUIRES_DOCS, PipelineState.UNDER_REVIEW}),
    PipelineState.REQUIRES_DOCS: frozenset({PipelineState.UNDER_REVIEW}),
    PipelineState.UNDER_REVIEW: frozenset(
        {PipelineState.REQUIRES_DOCS, PipelineState.LENDER_SUBMITTED}
    ),
    PipelineState.LENDER_SUBMITTED: frozenset({PipelineState.APPROVED, PipelineState.DECLINED}),
    PipelineState.APPROVED: frozenset(),
    PipelineState.DECLINED: frozenset(),
}

# Entered only by document review or lender submission, never by an explicit request.
AUTOMATIC_ONLY: frozenset[tuple[PipelineState, PipelineState]] = frozenset(
    {
        (PipelineState.NEW, PipelineState.REQUIRES_DOCS),
        (PipelineState.NEW, PipelineState.UNDER_REVIEW),
        (PipelineState.REQUIRES_DOCS, PipelineState.UNDER_REVIEW),
        (PipelineState.UNDER_REVIEW, PipelineState.REQUIRES_DOCS),
    }
)

TERMINAL_STATES = frozenset({PipelineState.APPROVED, PipelineState.DECLINED})

# Document review never moves an application out of these.
REVIEW_FROZEN_STATES = frozenset(
    {PipelineState.LENDER_SUBMITTED, PipelineState.APPROVED, PipelineState.DECLINED}
)


def parse_state(value: str | PipelineState) -> PipelineState:
    if isinstance(value, PipelineState):
        return value
    try:
        return PipelineState(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(
            code="invalid_state_value",
            message="Pipeline state is not recognised",
            details={"state": value, "allowed": [state.value for state in PipelineState]},
        ) from exc


def can_transition(current: PipelineState, requested: PipelineState) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def is_terminal(state: PipelineState) -> bool:
    return state in TERMINAL_STATES


def initial_state(all_required_accepted: bool) -> PipelineState:
    """Resolve the transient NEW state at creation time."""
    return PipelineState.UNDER_REVIEW if all_required_accepted else PipelineState.REQUIRES_DOCS


def attempt_transition(
    current: str | PipelineState,
    requested: str | PipelineState,
    override_granted: bool,
) -> PipelineState:
    current_state = parse_state(current)
    requested_state = parse_state(requested)
    if override_granted:
        return requested_state
    if not can_transition(current_state, requested_state):
        raise InvalidTransitionError(
            code="invalid_transition",
            message=f"Cannot move from {current_state.value} to {requested_state.value}",
            details={"from": current_state.value, "to": requested_state.value},
        )
    return requested_state


def attempt_requested_transition(
    current: str | PipelineState,
    requested: str | PipelineState,
    override_granted: bool,
) -> PipelineState:
    """Transition requested explicitly by staff rather than driven by the system."""
    current_state = parse_state(current)
    requested_state = parse_state(requested)
    if not override_granted and (current_state, requested_state) in AUTOMATIC_ONLY:
        raise InvalidTransitionError(
            code="invalid_transition",
            message=f"{requested_state.value} is entered automatically from {current_state.value}",
            details={"from": current_state.value, "to": requested_state.value},
        )
    return attempt_transition(current_state, requested_state, override_granted)
