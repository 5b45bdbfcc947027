"""
Shade - Call signaling state machine and relay.

The relay forwards opaque WebRTC signaling payloads (offer, answer, end)
between two identities. Media never passes through it.

Call lifecycle:

    IDLE -> OFFER_SENT -> RINGING -> ACCEPTED -> ACTIVE -> ENDED -> IDLE
                 |
                 +-> IDLE (callee offline)

There is no ringing timeout: a call rings until it is answered, hung up,
or one side disconnects.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .constants import CALL_FAILED_OFFLINE, CALL_HISTORY_SIZE
from .errors import CallError, CallTargetOffline, ErrorCode
from .presence import PresenceRegistry
from .protocol import Event, make_event
from .utils import pair_key

logger = logging.getLogger(__name__)


class CallState(Enum):
    """States of one side of a call."""

    IDLE = auto()  # No call
    OFFER_SENT = auto()  # Offer handed to the relay
    RINGING = auto()  # Offer delivered, waiting for an answer
    ACCEPTED = auto()  # Answer received, media negotiating
    ACTIVE = auto()  # Media connected
    ENDED = auto()  # Hung up, pending reset


class CallEvent(Enum):
    """Events that drive call state transitions."""

    PLACE_CALL = auto()  # Caller sent an offer
    OFFER_DELIVERED = auto()  # Relay forwarded the offer
    INCOMING_OFFER = auto()  # Callee received an offer
    TARGET_OFFLINE = auto()  # Callee holds no connection
    ANSWERED = auto()  # Callee answered
    MEDIA_CONNECTED = auto()  # Peer-to-peer media is up
    HANG_UP = auto()  # Either side ended the call
    RESET = auto()  # Return to idle after the call ended


@dataclass
class CallTransition:
    """Represents a call state transition."""

    from_state: CallState
    event: CallEvent
    to_state: CallState
    timestamp: float = field(default_factory=time.time)


class CallStateMachine:
    """
    Finite state machine for one party of a call.

    Used by the relay to track each session and by clients to track their
    own side.
    """

    TRANSITIONS: Dict[CallState, Dict[CallEvent, CallState]] = {
        CallState.IDLE: {
            CallEvent.PLACE_CALL: CallState.OFFER_SENT,
            CallEvent.INCOMING_OFFER: CallState.RINGING,
        },
        CallState.OFFER_SENT: {
            CallEvent.OFFER_DELIVERED: CallState.RINGING,
            CallEvent.TARGET_OFFLINE: CallState.IDLE,
            # The answer can race ahead of the relay's acknowledgement
            CallEvent.ANSWERED: CallState.ACCEPTED,
            CallEvent.HANG_UP: CallState.ENDED,
        },
        CallState.RINGING: {
            CallEvent.ANSWERED: CallState.ACCEPTED,
            CallEvent.HANG_UP: CallState.ENDED,
        },
        CallState.ACCEPTED: {
            CallEvent.MEDIA_CONNECTED: CallState.ACTIVE,
            CallEvent.HANG_UP: CallState.ENDED,
        },
        CallState.ACTIVE: {
            CallEvent.HANG_UP: CallState.ENDED,
        },
        CallState.ENDED: {
            CallEvent.RESET: CallState.IDLE,
        },
    }

    def __init__(self, initial_state: CallState = CallState.IDLE):
        self.current_state = initial_state
        self.previous_state: Optional[CallState] = None
        self.state_entry_time = time.time()
        self.failure_reason: Optional[str] = None
        self.transition_history: List[CallTransition] = []
        self.max_history = CALL_HISTORY_SIZE

        # Callbacks
        self.on_state_change: Optional[Callable[[CallState, CallState], None]] = None
        self.on_ended: Optional[Callable[[], None]] = None

    def transition(self, event: CallEvent, reason: Optional[str] = None) -> bool:
        """
        Attempt a state transition.

        Args:
            event: Event triggering the transition
            reason: Failure reason, recorded for TARGET_OFFLINE

        Returns:
            True if the transition happened, False if it is not valid here
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.warning(f"Invalid call transition: {self.current_state.name} + {event.name}")
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if event == CallEvent.TARGET_OFFLINE:
            self.failure_reason = reason or CALL_FAILED_OFFLINE
        elif event == CallEvent.PLACE_CALL:
            self.failure_reason = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(CallTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.debug(f"Call transition: {old_state.name} -> {new_state.name} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"Call state callback error: {e}")

        if new_state == CallState.ENDED and self.on_ended:
            try:
                self.on_ended()
            except Exception as e:
                logger.error(f"Call ended callback error: {e}")

        return True

    def require(self, event: CallEvent) -> None:
        """Like transition() but raises CallError when the event is not valid here."""
        if not self.transition(event):
            raise CallError(
                ErrorCode.E903_INVALID_CALL_TRANSITION,
                f"Cannot apply {event.name} in state {self.current_state.name}",
                {"state": self.current_state.name, "event": event.name},
            )

    def is_valid_transition(self, from_state: CallState, event: CallEvent) -> bool:
        return from_state in self.TRANSITIONS and event in self.TRANSITIONS[from_state]

    def get_state(self) -> CallState:
        return self.current_state

    def is_idle(self) -> bool:
        return self.current_state == CallState.IDLE

    def in_call(self) -> bool:
        """Whether a call is in progress (anything between IDLE and ENDED)."""
        return self.current_state not in (CallState.IDLE, CallState.ENDED)

    def end(self) -> None:
        """Hang up from any state past IDLE and return to IDLE."""
        if self.in_call():
            self.transition(CallEvent.HANG_UP)
        if self.current_state == CallState.ENDED:
            self.transition(CallEvent.RESET)

    def reset(self, state: CallState = CallState.IDLE) -> None:
        old_state = self.current_state
        self.current_state = state
        self.previous_state = old_state
        self.state_entry_time = time.time()
        self.failure_reason = None

    def get_history(self, count: int = 10) -> List[CallTransition]:
        return self.transition_history[-count:]


class CallSession:
    """Relay-side record of a call between two identities."""

    def __init__(self, caller: str, callee: str):
        self.caller = caller
        self.callee = callee
        self.fsm = CallStateMachine()
        self.last_signal: Optional[Dict[str, Any]] = None

    @property
    def state(self) -> CallState:
        return self.fsm.get_state()

    def counterpart(self, identity: str) -> str:
        return self.callee if identity == self.caller else self.caller

    def involves(self, identity: str) -> bool:
        return identity in (self.caller, self.callee)

    def __repr__(self) -> str:
        return f"CallSession({self.caller}->{self.callee}, state={self.state.name})"


SendEvent = Callable[[Any, Dict[str, Any]], Awaitable[None]]


class CallSignalingRelay:
    """
    Forwards call signaling between live connections.

    Signals may be sent repeatedly while a call is set up (trickled ICE
    candidates ride on the same commands), so a repeated offer or answer for
    an open session is forwarded without another state change.
    """

    def __init__(self, presence: PresenceRegistry, send_event: SendEvent):
        self.presence = presence
        self.send_event = send_event
        self.sessions: Dict[Tuple[str, str], CallSession] = {}

    def get_session(self, identity_a: str, identity_b: str) -> Optional[CallSession]:
        return self.sessions.get(pair_key(identity_a, identity_b))

    async def _forward(self, identity: str, event: Dict[str, Any]) -> None:
        """
        Deliver an event to the identity's live connection.

        Raises:
            CallTargetOffline: If the identity has no connection or the
                write fails
        """
        handle = self.presence.lookup(identity)
        if handle is None:
            raise CallTargetOffline(identity)
        try:
            await self.send_event(handle, event)
        except (ConnectionError, OSError) as e:
            logger.warning(f"Signal to {identity} failed: {e}")
            raise CallTargetOffline(identity) from e

    async def _notify(self, identity: str, event: Dict[str, Any]) -> bool:
        try:
            await self._forward(identity, event)
            return True
        except CallTargetOffline:
            return False

    async def _reply(self, handle: Any, identity: str, event: Dict[str, Any]) -> bool:
        try:
            await self.send_event(handle, event)
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(f"Reply to {identity} failed: {e}")
            return False

    async def offer(
        self, caller: str, callee: str, signal: Dict[str, Any], origin: Any = None
    ) -> CallSession:
        """
        Forward a call offer to the callee.

        When the callee is offline the caller gets callFailed{reason: offline}
        and the session ends up IDLE without being kept.

        Args:
            origin: Handle the offer came in on. callFailed goes there, so a
                caller that never announced itself still hears about it.

        Returns:
            The call session (RINGING when delivered, IDLE when not)
        """
        key = pair_key(caller, callee)
        session = self.sessions.get(key)
        repeat = session is not None and session.caller == caller and session.fsm.in_call()

        if not repeat:
            session = CallSession(caller, callee)
            session.fsm.transition(CallEvent.PLACE_CALL)

        session.last_signal = signal

        try:
            event = make_event(Event.INCOMING_CALL, signal=signal, **{"from": caller})
            await self._forward(callee, event)
        except CallTargetOffline as e:
            logger.info(f"Call {caller} -> {callee} failed: {e.details['reason']}")
            self.sessions.pop(key, None)
            if repeat:
                session.fsm.end()
            else:
                session.fsm.transition(CallEvent.TARGET_OFFLINE, CALL_FAILED_OFFLINE)
            failed = make_event(Event.CALL_FAILED, reason=CALL_FAILED_OFFLINE)
            if origin is None:
                await self._notify(caller, failed)
            else:
                await self._reply(origin, caller, failed)
            return session

        if not repeat:
            session.fsm.transition(CallEvent.OFFER_DELIVERED)
            self.sessions[key] = session
            logger.info(f"Call {caller} -> {callee} ringing")

        return session

    async def answer(self, callee: str, caller: str, signal: Dict[str, Any]) -> CallSession:
        """
        Relay the callee's answer to the caller as callAccepted.

        Raises:
            CallError: If there is no call to answer
        """
        session = self.get_session(callee, caller)
        if session is None or session.callee != callee:
            raise CallError(
                ErrorCode.E903_INVALID_CALL_TRANSITION,
                f"No incoming call from {caller}",
                {"caller": caller},
            )

        if session.state == CallState.RINGING:
            session.fsm.require(CallEvent.ANSWERED)
            logger.info(f"Call {caller} -> {callee} accepted")

        session.last_signal = signal
        if not await self._notify(caller, make_event(Event.CALL_ACCEPTED, signal=signal)):
            # Caller vanished between offer and answer
            await self.end(caller, callee)
        return session

    async def end(self, sender: str, target: str) -> bool:
        """
        End the call between sender and target and tell the target.

        Valid from any state past IDLE. Ending a call that no longer exists
        still notifies the target and is otherwise a no-op.

        Returns:
            True if a session was open
        """
        session = self.sessions.pop(pair_key(sender, target), None)
        if session is not None:
            session.fsm.end()
            logger.info(f"Call between {session.caller} and {session.callee} ended by {sender}")

        await self._notify(target, make_event(Event.CALL_ENDED, **{"from": sender}))
        return session is not None

    async def drop_identity(self, identity: str) -> int:
        """
        End every call the identity takes part in after it disconnects.

        Returns:
            Number of sessions ended
        """
        sessions = [s for s in self.sessions.values() if s.involves(identity)]
        for session in sessions:
            await self.end(identity, session.counterpart(identity))
        return len(sessions)
