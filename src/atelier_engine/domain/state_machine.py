"""Order State Machine Guard.

Uses python-statemachine to enforce legal order transitions at the domain level.
Whatever the API, MCP tools or fulfillment pipeline ask for, an illegal move
(e.g. paid -> completed) raises TransitionNotAllowed before any row is touched.

The machine is instantiated per order from the stored status string. It only
decides WHERE an order may go; the conditional UPDATE in the repository decides
WHETHER this request is the one that moves it.

Transition table:
    pending_quote  -> quoted       (provider_quotes)
    quoted         -> accepted     (client_accepts)
    quoted         -> paid         (payment_confirmed)
    accepted       -> paid         (payment_confirmed)
    paid           -> in_progress  (fulfillment_started)
    in_progress    -> paid         (fulfillment_reverted)
    in_progress    -> delivered    (work_delivered)
    delivered      -> completed    (client_approves)
    delivered      -> disputed     (client_disputes)
    pending_quote  -> cancelled    (order_cancelled)
    quoted         -> cancelled    (order_cancelled)
    accepted       -> cancelled    (order_cancelled)
    paid           -> cancelled    (order_cancelled)
"""

from __future__ import annotations

from statemachine import State, StateMachine


class OrderStateMachine(StateMachine):
    """State machine that guards the order lifecycle.

    Usage:
        sm = OrderStateMachine(current_status="delivered")
        sm.client_approves()  # transitions to completed
        sm.status             # "completed"
    """

    # --- States ---
    pending_quote = State("pending_quote", value="pending_quote", initial=True)
    quoted = State("quoted", value="quoted")
    accepted = State("accepted", value="accepted")
    paid = State("paid", value="paid")
    in_progress = State("in_progress", value="in_progress")
    delivered = State("delivered", value="delivered")
    completed = State("completed", value="completed", final=True)
    cancelled = State("cancelled", value="cancelled", final=True)
    disputed = State("disputed", value="disputed", final=True)

    # --- Events / Transitions ---

    # Pricing
    provider_quotes = pending_quote.to(quoted)
    client_accepts = quoted.to(accepted)

    # Payment
    payment_confirmed = quoted.to(paid) | accepted.to(paid)

    # Fulfillment
    fulfillment_started = paid.to(in_progress)
    fulfillment_reverted = in_progress.to(paid)
    work_delivered = in_progress.to(delivered)

    # Review
    client_approves = delivered.to(completed)
    client_disputes = delivered.to(disputed)

    # Cancellation
    order_cancelled = (
        pending_quote.to(cancelled)
        | quoted.to(cancelled)
        | accepted.to(cancelled)
        | paid.to(cancelled)
    )

    def __init__(self, current_status: str = "pending_quote") -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current OrderStatus value (e.g., "paid").
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches OrderStatus enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [getattr(event, "id", event.name) for event in self.allowed_events]


def validate_transition(current_status: str, event_name: str) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = OrderStateMachine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
