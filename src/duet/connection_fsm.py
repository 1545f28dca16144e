"""
Duet - Session State Machine.

Created by duet contributors

This module implements a formal finite state machine for the lifecycle of a
chat session: handshake (offer/answer), channel open, and teardown.
Provides table-driven transitions, validation, and observable history.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import STATE_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session states. Values are the status text shown to users."""

    IDLE = "Idle"
    OFFERING = "Creating offer"
    AWAITING_ANSWER = "Waiting for answer"
    ANSWERING = "Answer created, waiting for channel"
    CONNECTING = "Connecting"
    OPEN = "Channel open"
    CLOSED = "Closed"
    FAILED = "Failed"


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    OFFER_REQUESTED = auto()  # Local user starts the offerer flow
    OFFER_CREATED = auto()  # Offer descriptor ready for export
    OFFER_RECEIVED = auto()  # Local user pasted a peer's offer
    ANSWER_ACCEPTED = auto()  # Local user pasted the peer's answer
    STEP_REJECTED = auto()  # Handshake input turned out to be invalid
    CHANNEL_OPENED = auto()  # Transport reports the channel open
    CHANNEL_CLOSED = auto()  # Transport reports the channel closed
    TRANSPORT_ERROR = auto()  # Connectivity failure
    CLOSE_REQUESTED = auto()  # Local teardown


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


def _failure_edges(*states: SessionState) -> Dict[SessionState, Dict[SessionEvent, SessionState]]:
    return {
        state: {
            SessionEvent.TRANSPORT_ERROR: SessionState.FAILED,
            SessionEvent.CLOSE_REQUESTED: SessionState.CLOSED,
        }
        for state in states
    }


class SessionStateMachine:
    """
    Finite state machine for a single chat session.

    Offerer path: IDLE -> OFFERING -> AWAITING_ANSWER -> CONNECTING -> OPEN -> CLOSED
    Answerer path: IDLE -> ANSWERING -> OPEN -> CLOSED
    FAILED is reachable from any non-terminal state. CLOSED and FAILED are
    terminal; no reconnection is attempted.
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = _failure_edges(
        SessionState.IDLE,
        SessionState.OFFERING,
        SessionState.AWAITING_ANSWER,
        SessionState.ANSWERING,
        SessionState.CONNECTING,
        SessionState.OPEN,
    )
    TRANSITIONS[SessionState.IDLE].update(
        {
            SessionEvent.OFFER_REQUESTED: SessionState.OFFERING,
            SessionEvent.OFFER_RECEIVED: SessionState.ANSWERING,
        }
    )
    TRANSITIONS[SessionState.OFFERING].update(
        {
            SessionEvent.OFFER_CREATED: SessionState.AWAITING_ANSWER,
            SessionEvent.ANSWER_ACCEPTED: SessionState.CONNECTING,
            SessionEvent.CHANNEL_CLOSED: SessionState.FAILED,
        }
    )
    TRANSITIONS[SessionState.AWAITING_ANSWER].update(
        {
            SessionEvent.ANSWER_ACCEPTED: SessionState.CONNECTING,
            SessionEvent.CHANNEL_CLOSED: SessionState.FAILED,
        }
    )
    TRANSITIONS[SessionState.ANSWERING].update(
        {
            SessionEvent.CHANNEL_OPENED: SessionState.OPEN,
            SessionEvent.STEP_REJECTED: SessionState.IDLE,
            SessionEvent.CHANNEL_CLOSED: SessionState.FAILED,
        }
    )
    TRANSITIONS[SessionState.CONNECTING].update(
        {
            SessionEvent.CHANNEL_OPENED: SessionState.OPEN,
            SessionEvent.STEP_REJECTED: SessionState.AWAITING_ANSWER,
            SessionEvent.CHANNEL_CLOSED: SessionState.FAILED,
        }
    )
    TRANSITIONS[SessionState.OPEN].update(
        {
            SessionEvent.CHANNEL_CLOSED: SessionState.CLOSED,
        }
    )

    def __init__(self, initial_state: SessionState = SessionState.IDLE):
        """
        Initialize state machine.

        Args:
            initial_state: Initial state (default: IDLE)
        """
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self.state_entry_time = time.time()
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_HISTORY_LIMIT

        # Callbacks
        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        logger.debug(f"State machine initialized in state: {self.current_state.name}")

    def transition(self, event: SessionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Error message for failure events

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(
                f"Invalid transition: {self.current_state.name} + "
                f"{event.name} (no valid target state)"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if new_state == SessionState.FAILED:
            self.error_message = error_msg or "Unknown error"

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(
            f"State transition: {old_state.name} -> {new_state.name} " f"(event: {event.name})"
        )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        if new_state == SessionState.FAILED and self.on_error:
            try:
                self.on_error(self.error_message)
            except Exception as e:
                logger.error(f"Error callback error: {e}")

        return True

    def is_valid_transition(self, from_state: SessionState, event: SessionEvent) -> bool:
        """
        Check if a transition is valid.

        Args:
            from_state: Source state
            event: Event triggering transition

        Returns:
            True if valid, False otherwise
        """
        return from_state in self.TRANSITIONS and event in self.TRANSITIONS[from_state]

    def get_state(self) -> SessionState:
        """Get current state."""
        return self.current_state

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def is_open(self) -> bool:
        return self.current_state == SessionState.OPEN

    def is_terminal(self) -> bool:
        """Check if the session has ended (closed or failed)."""
        return self.current_state in TERMINAL_STATES

    def get_error_message(self) -> Optional[str]:
        """Get current error message."""
        return self.error_message

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """
        Get recent transition history.

        Args:
            count: Number of recent transitions to return

        Returns:
            List of recent transitions
        """
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get state machine statistics.

        Returns:
            Dictionary with statistics
        """
        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "error_message": self.error_message,
            "total_transitions": len(self.transition_history),
            "is_open": self.is_open(),
            "is_terminal": self.is_terminal(),
        }

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"SessionStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
