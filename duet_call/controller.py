"""
CallSessionController - state machine and negotiation for one call.

Lifecycle:
    idle -> requesting   (start_outgoing, offer published)
    idle -> negotiating  (accept_incoming)
    idle -> declined     (decline)
    requesting -> negotiating -> connected -> ended
    any non-terminal -> ended | failed

Relay deliveries, connection state changes, remote tracks, local candidates and
timer expiries are posted to a mailbox and handled one at a time. Every handler
re-checks the session status first, so late or duplicated events are dropped.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    CallError,
    ErrorKind,
    InvalidCallState,
    MediaAccessDenied,
    NegotiationTimeout,
    RelayError,
    SignalPublishFailed,
    TransportLost,
)
from .events import (
    ConnectionStateChanged,
    LocalCandidate,
    SignalReceived,
    TimerExpired,
    TrackReceived,
)
from .ice_buffer import IceCandidateBuffer
from .protocol.signals import description_payload, signal_key
from .records import CallRecord, CallRecordSink, LoggingCallRecordSink
from .relay import SignalRelay
from .session import (
    CallRole,
    CallSession,
    CallStatus,
    SignalMessage,
    SignalType,
)

NEGOTIATION_TIMEOUT = 40.0
DISCONNECT_GRACE = 4.0
PUBLISH_ATTEMPTS = 3
PUBLISH_BASE_DELAY = 0.5
PUBLISH_MAX_DELAY = 4.0

# Allowed transitions (terminal states have none)
TRANSITIONS = {
    CallStatus.IDLE: {CallStatus.REQUESTING, CallStatus.NEGOTIATING, CallStatus.DECLINED,
                      CallStatus.ENDED, CallStatus.FAILED},
    CallStatus.REQUESTING: {CallStatus.NEGOTIATING, CallStatus.DECLINED, CallStatus.ENDED,
                            CallStatus.FAILED},
    CallStatus.NEGOTIATING: {CallStatus.CONNECTED, CallStatus.ENDED, CallStatus.FAILED},
    CallStatus.CONNECTED: {CallStatus.ENDED, CallStatus.FAILED},
}

# Transitions reported to the record sink
RECORDED_STATES = frozenset({CallStatus.CONNECTED, CallStatus.DECLINED, CallStatus.ENDED, CallStatus.FAILED})


class CallSessionController:
    """
    Owns one CallSession, its PeerConnectionAdapter and its relay subscription.

    UI callbacks (assign as attributes):
        on_state_change(session): after every status change
        on_remote_stream(stream): once, on the first remote track
        on_error(kind, reason): when the session ends with a classified error
    """

    def __init__(self, local_user_id: str, relay: SignalRelay,
                 adapter_factory: Callable[[], Any],
                 call_id: Optional[str] = None,
                 negotiation_timeout: float = NEGOTIATION_TIMEOUT,
                 disconnect_grace: float = DISCONNECT_GRACE,
                 publish_attempts: int = PUBLISH_ATTEMPTS,
                 publish_base_delay: float = PUBLISH_BASE_DELAY,
                 publish_max_delay: float = PUBLISH_MAX_DELAY,
                 record_sink: Optional[CallRecordSink] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            local_user_id: Our user id (signals to anyone else are ignored)
            relay: Signal relay
            adapter_factory: Builds the PeerConnectionAdapter when media is needed
            call_id: Id for an outgoing call (generated if omitted)
            negotiation_timeout: Seconds allowed to reach connected
            disconnect_grace: Seconds a connected transport may stay disconnected
            publish_attempts: Relay writes per signal before giving up
            publish_base_delay: First retry delay (doubles per attempt)
            publish_max_delay: Retry delay cap
            record_sink: Receives call records (fire-and-forget)
            logger: Logger instance
        """
        self.local_user_id = local_user_id
        self.relay = relay
        self.adapter_factory = adapter_factory
        self.call_id = call_id or str(uuid.uuid4())
        self.negotiation_timeout = negotiation_timeout
        self.disconnect_grace = disconnect_grace
        self.publish_attempts = max(1, publish_attempts)
        self.publish_base_delay = publish_base_delay
        self.publish_max_delay = publish_max_delay
        self.record_sink = record_sink or LoggingCallRecordSink()
        self.logger = logger or logging.getLogger(__name__)

        self.session: Optional[CallSession] = None
        self.adapter = None

        # UI callbacks
        self.on_state_change: Optional[Callable[[CallSession], None]] = None
        self.on_remote_stream: Optional[Callable[[Any], None]] = None
        self.on_error: Optional[Callable[[ErrorKind, Optional[str]], None]] = None

        self._buffer: Optional[IceCandidateBuffer] = None
        self._seen = set()
        self._answer_applied = False
        self._offer_waiter: Optional[asyncio.Future] = None
        self._unverified: List[SignalMessage] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._mailbox: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None

        # Timers: name -> (generation, handle)
        self._timers: Dict[str, Any] = {}
        self._timer_generation = 0

    # ========================================================================
    # Public operations
    # ========================================================================

    async def start_outgoing(self, remote_user_id: str, has_video: bool) -> CallSession:
        """
        Place a call.

        Acquires media, publishes the offer and leaves the session in
        ``requesting`` until the answer arrives.

        Raises:
            MediaAccessDenied: Capture refused (session failed, nothing published)
            InvalidCallState: Controller already used
        """
        session = self._create_session(self.call_id, remote_user_id, CallRole.OFFERER, has_video)
        self.logger.info(f"Starting outgoing {'video' if has_video else 'audio'} call {session.call_id} to {remote_user_id}")

        self._set_status(CallStatus.REQUESTING)
        self._arm_timer('negotiation', self.negotiation_timeout)

        adapter = self._create_adapter()
        try:
            if not await self._acquire_media(adapter, has_video):
                return session

            offer = await adapter.create_offer()
            local = await adapter.set_local_description(offer)
            if session.is_terminal:
                return session

            # Subscribe first so an immediate answer cannot be missed
            self._subscribe()
            await self._publish(SignalType.OFFER, local)

        except MediaAccessDenied as e:
            self.logger.warning(f"Media access denied for call {session.call_id}: {e}")
            self._fail(e, notify=None)
            raise
        except Exception as e:
            self._fail_unexpected('start_outgoing', e)

        return session

    async def accept_incoming(self, call_id: str, has_video: bool,
                              remote_user_id: Optional[str] = None) -> CallSession:
        """
        Answer a call.

        Reads the offer from the relay history (or waits for it, bounded by
        the negotiation timeout), applies it, drains buffered candidates and
        publishes the answer.

        Raises:
            MediaAccessDenied: Capture refused (session failed, peer notified)
            InvalidCallState: Controller already used
        """
        session = self._create_session(call_id, remote_user_id, CallRole.ANSWERER, has_video)
        self.logger.info(f"Accepting call {call_id} ({'video' if has_video else 'audio'})")

        self._set_status(CallStatus.NEGOTIATING)
        self._arm_timer('negotiation', self.negotiation_timeout)

        self._offer_waiter = asyncio.get_running_loop().create_future()
        self._subscribe()

        try:
            offer = await self._find_offer()
            if offer is None or session.is_terminal:
                return session

            session.remote_user_id = offer.from_user_id
            self._replay_unverified()
            adapter = self._create_adapter()

            if not await self._acquire_media(adapter, has_video):
                return session

            await adapter.set_remote_description(description_payload(offer.payload['sdp'], 'offer'))
            await self._buffer.drain_into(adapter)
            if session.is_terminal:
                return session

            answer = await adapter.create_answer()
            local = await adapter.set_local_description(answer)
            if session.is_terminal:
                return session

            await self._publish(SignalType.ANSWER, local)

        except MediaAccessDenied as e:
            self.logger.warning(f"Media access denied for call {call_id}: {e}")
            self._fail(e, notify=SignalType.HANGUP)
            raise
        except Exception as e:
            self._fail_unexpected('accept_incoming', e)

        return session

    def decline(self, call_id: str, remote_user_id: Optional[str] = None, reason: str = 'declined'):
        """
        Refuse an incoming call without touching media.

        The session goes straight to ``declined``; the decline signal is
        published in the background.
        """
        session = self._create_session(call_id, remote_user_id, CallRole.ANSWERER, False)
        self.logger.info(f"Declining call {call_id} ({reason})")
        self._terminate(CallStatus.DECLINED, reason, notify=SignalType.DECLINE)
        return session

    def end_call(self, reason: str = 'hangup'):
        """
        Hang up. Idempotent; the session is ``ended`` when this returns.
        """
        session = self.session
        if session is None or session.is_terminal:
            return
        self.logger.info(f"Ending call {session.call_id} ({reason})")
        self._terminate(CallStatus.ENDED, reason, notify=SignalType.HANGUP)

    def mute_audio(self, muted: bool) -> bool:
        if not self._active():
            return False
        if self.adapter.mute_audio(muted):
            self.session.is_muted = muted
            return True
        return False

    def disable_video(self, disabled: bool) -> bool:
        if not self._active():
            return False
        if self.adapter.disable_video(disabled):
            self.session.is_video_off = disabled
            return True
        return False

    async def start_screen_share(self) -> bool:
        """
        Replace the outgoing camera track with the display.

        A refused display capture is reported through on_error but does not
        end the call.
        """
        if not self._active():
            return False
        try:
            started = await self.adapter.start_screen_share()
        except MediaAccessDenied as e:
            self.logger.warning(f"Screen share refused: {e}")
            self._notify_error(e.kind, str(e))
            return False
        if started and self._active():
            self.session.is_screen_sharing = True
        return started

    async def stop_screen_share(self) -> bool:
        if not self._active():
            return False
        stopped = await self.adapter.stop_screen_share()
        if stopped and self.session is not None:
            self.session.is_screen_sharing = False
        return stopped

    async def get_stats(self) -> Dict[str, Any]:
        stats = {'call': self.session.describe() if self.session else None}
        if self._active():
            stats['connection'] = await self.adapter.get_stats()
        return stats

    def on_signal(self, signal: SignalMessage):
        """Relay subscription callback."""
        self.dispatch(SignalReceived(signal))

    def dispatch(self, event):
        """Post an event to the mailbox (processed serially)."""
        if self.session is not None and self.session.is_terminal:
            self.logger.debug(f"Call {self.session.call_id} is {self.session.status.value}, dropping {type(event).__name__}")
            return
        if self._mailbox is None:
            self._mailbox = asyncio.Queue()
        self._mailbox.put_nowait(event)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.ensure_future(self._run_mailbox())

    async def settle(self):
        """Wait until every posted event has been handled."""
        await asyncio.sleep(0)
        if self._mailbox is not None:
            await self._mailbox.join()

    async def wait_closed(self):
        """Wait for the background teardown (hangup publish, connection close)."""
        if self._teardown_task is not None:
            await asyncio.shield(self._teardown_task)

    # ========================================================================
    # Mailbox
    # ========================================================================

    async def _run_mailbox(self):
        mailbox = self._mailbox
        while True:
            event = await mailbox.get()
            try:
                if event is not None:
                    await self._handle_event(event)
            except Exception as e:
                self._fail_unexpected(type(event).__name__, e)
            finally:
                mailbox.task_done()

            if self.session is not None and self.session.is_terminal and mailbox.empty():
                break

    async def _handle_event(self, event):
        session = self.session
        if session is None or session.is_terminal:
            return

        if isinstance(event, SignalReceived):
            await self._handle_signal(event.signal)
        elif isinstance(event, ConnectionStateChanged):
            self._handle_connection_state(event.state)
        elif isinstance(event, TrackReceived):
            self._handle_track(event.track)
        elif isinstance(event, LocalCandidate):
            await self._publish(SignalType.ICE_CANDIDATE, event.candidate)
        elif isinstance(event, TimerExpired):
            self._handle_timer(event)
        else:
            self.logger.debug(f"Unknown event ignored: {event!r}")

    # ========================================================================
    # Signals
    # ========================================================================

    async def _handle_signal(self, signal: SignalMessage):
        session = self.session
        if signal.call_id != session.call_id:
            self.logger.debug(f"Signal for call {signal.call_id} ignored (this is {session.call_id})")
            return
        if signal.to_user_id != self.local_user_id:
            self.logger.debug(f"{signal.type.value} addressed to {signal.to_user_id} ignored")
            return
        if session.remote_user_id:
            if signal.from_user_id != session.remote_user_id:
                self.logger.debug(f"{signal.type.value} from unexpected sender {signal.from_user_id} ignored")
                return
        elif signal.type != SignalType.OFFER:
            # Answerer still waiting: only the offer's sender may talk to us
            caller = await self._offer_sender()
            if session.is_terminal:
                return
            caller = session.remote_user_id or caller
            if caller is None:
                if signal not in self._unverified:
                    self.logger.debug(f"{signal.type.value} from {signal.from_user_id} held until the offer arrives")
                    self._unverified.append(signal)
                return
            if signal.from_user_id != caller:
                self.logger.debug(f"{signal.type.value} from {signal.from_user_id} ignored (offer came from {caller})")
                return

        key = signal_key(signal)
        if key in self._seen:
            self.logger.debug(f"Duplicate {signal.type.value} for {session.call_id} ignored")
            return
        self._seen.add(key)

        if signal.type == SignalType.OFFER:
            self._handle_offer(signal)
        elif signal.type == SignalType.ANSWER:
            await self._handle_answer(signal)
        elif signal.type == SignalType.ICE_CANDIDATE:
            await self._handle_remote_candidate(signal)
        elif signal.type == SignalType.DECLINE:
            self._handle_decline(signal)
        elif signal.type == SignalType.HANGUP:
            self._handle_hangup(signal)

    def _handle_offer(self, signal: SignalMessage):
        if self.session.role != CallRole.ANSWERER:
            self.logger.debug("Offer received by the offerer, ignoring")
            return
        if self._offer_waiter is None or self._offer_waiter.done():
            self.logger.debug("Offer already taken, ignoring")
            return
        self._offer_waiter.set_result(signal)

    async def _handle_answer(self, signal: SignalMessage):
        session = self.session
        if session.role != CallRole.OFFERER or self._answer_applied:
            self.logger.debug(f"Answer not expected (role={session.role.value}), ignoring")
            return
        if session.status != CallStatus.REQUESTING or self.adapter is None:
            self.logger.debug(f"Answer in state {session.status.value}, ignoring")
            return

        self._answer_applied = True
        adapter = self.adapter
        await adapter.set_remote_description(description_payload(signal.payload['sdp'], 'answer'))
        if session.is_terminal:
            return

        self._set_status(CallStatus.NEGOTIATING)
        await self._buffer.drain_into(adapter)

    async def _handle_remote_candidate(self, signal: SignalMessage):
        if not self._buffer.drained:
            self._buffer.push(signal.payload, signal.sent_at)
            return
        await self.adapter.add_ice_candidate(signal.payload)

    def _handle_decline(self, signal: SignalMessage):
        session = self.session
        if session.role != CallRole.OFFERER or session.status != CallStatus.REQUESTING:
            self.logger.debug(f"Decline in state {session.status.value} ignored")
            return
        reason = signal.payload.get('reason') or 'declined'
        self.logger.info(f"Call {session.call_id} declined by {signal.from_user_id} ({reason})")
        self._terminate(CallStatus.DECLINED, reason)

    def _handle_hangup(self, signal: SignalMessage):
        session = self.session
        reason = signal.payload.get('reason') or 'remote hangup'
        self.logger.info(f"Call {session.call_id} hung up by {signal.from_user_id} ({reason})")
        status = CallStatus.ENDED if session.was_connected else CallStatus.FAILED
        self._terminate(status, reason)

    # ========================================================================
    # Transport / media events
    # ========================================================================

    def _handle_connection_state(self, state: str):
        session = self.session

        if state == 'connected':
            self._cancel_timer('grace')
            if session.status == CallStatus.NEGOTIATING:
                self._cancel_timer('negotiation')
                session.connected_at = time.time()
                self._set_status(CallStatus.CONNECTED)
            elif session.status == CallStatus.CONNECTED:
                self.logger.info(f"Transport recovered for {session.call_id}")

        elif state == 'disconnected':
            if session.status == CallStatus.CONNECTED and 'grace' not in self._timers:
                self.logger.warning(f"Transport disconnected for {session.call_id}, waiting {self.disconnect_grace}s")
                self._arm_timer('grace', self.disconnect_grace)

        elif state in ('failed', 'closed'):
            self._transport_lost(f"transport {state}")

    def _handle_track(self, track):
        session = self.session
        if session.remote_stream is not None:
            return
        stream = getattr(self.adapter, 'remote_stream', None) if self.adapter else None
        session.remote_stream = stream if stream is not None else track
        self.logger.info(f"Remote stream available for {session.call_id}")
        if self.on_remote_stream:
            try:
                self.on_remote_stream(session.remote_stream)
            except Exception as e:
                self.logger.error(f"Error in on_remote_stream callback: {e}", exc_info=True)

    def _handle_timer(self, event: TimerExpired):
        entry = self._timers.get(event.name)
        if entry is None or entry[0] != event.generation:
            return
        del self._timers[event.name]

        session = self.session
        if event.name == 'negotiation' and session.status in (CallStatus.REQUESTING, CallStatus.NEGOTIATING):
            self.logger.warning(f"Negotiation timeout for {session.call_id} after {self.negotiation_timeout}s")
            self._fail(NegotiationTimeout(f"No connection after {self.negotiation_timeout:g}s"))
        elif event.name == 'grace' and session.status == CallStatus.CONNECTED:
            self._transport_lost(f"disconnected for more than {self.disconnect_grace:g}s")

    def _transport_lost(self, reason: str):
        session = self.session
        self.logger.warning(f"Transport lost for {session.call_id}: {reason}")
        if session.was_connected:
            self._terminate(CallStatus.ENDED, reason, error=TransportLost(reason), notify=SignalType.HANGUP)
        else:
            self._fail(TransportLost(reason))

    # ========================================================================
    # Timers
    # ========================================================================

    def _arm_timer(self, name: str, delay: float):
        self._cancel_timer(name)
        self._timer_generation += 1
        generation = self._timer_generation
        handle = asyncio.get_running_loop().call_later(
            delay, self.dispatch, TimerExpired(name, generation)
        )
        self._timers[name] = (generation, handle)

    def _cancel_timer(self, name: str):
        entry = self._timers.pop(name, None)
        if entry is not None:
            entry[1].cancel()

    def _cancel_timers(self):
        for name in list(self._timers):
            self._cancel_timer(name)

    # ========================================================================
    # Relay
    # ========================================================================

    def _subscribe(self):
        if self._unsubscribe is None:
            self._unsubscribe = self.relay.subscribe(self.session.call_id, self.on_signal)

    async def _find_offer(self) -> Optional[SignalMessage]:
        offers = await self.relay.history(self.session.call_id, SignalType.OFFER)
        offers = [s for s in offers if s.to_user_id == self.local_user_id]
        if self.session.remote_user_id:
            offers = [s for s in offers if s.from_user_id == self.session.remote_user_id]
        if offers and not self._offer_waiter.done():
            self._seen.add(signal_key(offers[-1]))
            self._offer_waiter.set_result(offers[-1])
        return await self._offer_waiter

    async def _offer_sender(self) -> Optional[str]:
        offers = await self.relay.history(self.session.call_id, SignalType.OFFER)
        offers = [s for s in offers if s.to_user_id == self.local_user_id]
        return offers[-1].from_user_id if offers else None

    def _replay_unverified(self):
        held, self._unverified = self._unverified, []
        for signal in held:
            if signal.from_user_id == self.session.remote_user_id:
                self.dispatch(SignalReceived(signal))
            else:
                self.logger.debug(f"Held {signal.type.value} from {signal.from_user_id} dropped (offer came from {self.session.remote_user_id})")

    async def _publish(self, signal_type: SignalType, payload: Dict[str, Any], critical: bool = True) -> bool:
        """
        Publish with exponential backoff.

        A critical publish that keeps failing fails the session; a
        non-critical one (terminal notifications) is only logged.
        """
        session = self.session
        delay = self.publish_base_delay
        last_error = None

        for attempt in range(1, self.publish_attempts + 1):
            if critical and session.is_terminal:
                return False
            try:
                await self.relay.publish(session.call_id, self.local_user_id, session.remote_user_id,
                                         signal_type, payload)
                self.logger.debug(f"Published {signal_type.value} for {session.call_id}")
                return True
            except RelayError as e:
                last_error = e
                if attempt == self.publish_attempts:
                    break
                wait = min(delay, self.publish_max_delay)
                self.logger.warning(
                    f"Publishing {signal_type.value} failed (attempt {attempt}/{self.publish_attempts}), "
                    f"retrying in {wait:.1f}s: {e}"
                )
                await asyncio.sleep(wait)
                delay *= 2

        if critical:
            self.logger.error(f"Giving up publishing {signal_type.value} for {session.call_id}: {last_error}")
            self._fail(SignalPublishFailed(f"Could not publish {signal_type.value}: {last_error}"), notify=None)
        else:
            self.logger.warning(f"Could not notify peer ({signal_type.value}) for {session.call_id}: {last_error}")
        return False

    # ========================================================================
    # State
    # ========================================================================

    def _create_session(self, call_id: str, remote_user_id: Optional[str],
                        role: CallRole, has_video: bool) -> CallSession:
        if self.session is not None:
            raise InvalidCallState(f"Controller already owns call {self.session.call_id}")
        self.call_id = call_id
        self.session = CallSession(
            call_id=call_id,
            local_user_id=self.local_user_id,
            remote_user_id=remote_user_id or '',
            role=role,
            has_video=has_video,
        )
        self._buffer = IceCandidateBuffer(call_id, logger=self.logger)
        return self.session

    async def _acquire_media(self, adapter, has_video: bool) -> bool:
        """
        Open local media for the call.

        Returns:
            False if the call reached a terminal state while the devices were
            opening; the fresh tracks are stopped and never attached to the session
        """
        stream = await adapter.acquire_local_media(has_video)
        if self.session.is_terminal:
            self.logger.info(f"Call {self.session.call_id} ended during media acquisition, releasing devices")
            stream.stop()
            adapter.stop_local_tracks()
            return False
        self.session.local_stream = stream
        return True

    def _create_adapter(self):
        adapter = self.adapter_factory()
        adapter.on_ice_candidate(lambda candidate: self.dispatch(LocalCandidate(candidate)))
        adapter.on_track(lambda track: self.dispatch(TrackReceived(track)))
        adapter.on_connection_state_change(lambda state: self.dispatch(ConnectionStateChanged(state)))
        adapter.on_screen_share_ended(self._screen_share_ended)
        self.adapter = adapter
        return adapter

    def _screen_share_ended(self):
        if self.session is not None:
            self.session.is_screen_sharing = False

    def _active(self) -> bool:
        return self.session is not None and not self.session.is_terminal and self.adapter is not None

    def _set_status(self, status: CallStatus) -> bool:
        session = self.session
        if status not in TRANSITIONS.get(session.status, ()):
            self.logger.debug(f"Ignoring transition {session.status.value} -> {status.value}")
            return False

        old = session.status
        session.status = status
        self.logger.info(f"Call {session.call_id}: {old.value} -> {status.value}")

        if status in RECORDED_STATES:
            self._record()
        if self.on_state_change:
            try:
                self.on_state_change(session)
            except Exception as e:
                self.logger.error(f"Error in on_state_change callback: {e}", exc_info=True)
        return True

    def _fail(self, error: CallError, notify: Optional[SignalType] = SignalType.HANGUP):
        self._terminate(CallStatus.FAILED, str(error), error=error, notify=notify)

    def _fail_unexpected(self, where: str, error: Exception):
        if self.session is None or self.session.is_terminal:
            self.logger.debug(f"{where} interrupted by teardown: {error}")
            return
        self.logger.error(f"Unexpected error in {where}: {error}", exc_info=True)
        self._fail(CallError(str(error)))

    def _terminate(self, status: CallStatus, reason: str,
                   error: Optional[CallError] = None,
                   notify: Optional[SignalType] = None) -> bool:
        """
        Enter a terminal state (at most once) and release everything.

        The state change is synchronous; notifying the peer and closing the
        connection run in the background (see wait_closed).
        """
        session = self.session
        if session is None or session.is_terminal:
            return False

        session.ended_at = time.time()
        session.end_reason = reason
        session.error = error.kind if error is not None else None

        self._cancel_timers()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._buffer is not None:
            self._buffer.clear()
        self._unverified.clear()
        if self._offer_waiter is not None and not self._offer_waiter.done():
            self._offer_waiter.set_result(None)

        adapter, self.adapter = self.adapter, None
        if adapter is not None:
            adapter.stop_local_tracks()
        session.local_stream = None
        session.remote_stream = None
        session.is_screen_sharing = False

        if not self._set_status(status):
            # Not reachable from the current state; force the terminal state anyway
            session.status = status
            self._record()

        if error is not None:
            self._notify_error(error.kind, reason)

        # Wake the mailbox worker so it can exit
        if self._mailbox is not None:
            self._mailbox.put_nowait(None)

        self._teardown_task = asyncio.ensure_future(self._teardown(adapter, notify, reason))
        return True

    async def _teardown(self, adapter, notify: Optional[SignalType], reason: str):
        session = self.session
        if notify is not None:
            try:
                if not session.remote_user_id:
                    offers = await self.relay.history(session.call_id, SignalType.OFFER)
                    if offers:
                        session.remote_user_id = offers[-1].from_user_id
                if session.remote_user_id:
                    await self._publish(notify, {'reason': reason}, critical=False)
                else:
                    self.logger.warning(f"No peer known for {session.call_id}, {notify.value} not sent")
            except Exception as e:
                self.logger.warning(f"Failed to notify peer of {notify.value}: {e}")

        if adapter is not None:
            await adapter.teardown()
        self.logger.debug(f"Call {session.call_id} torn down")

    def _notify_error(self, kind: ErrorKind, reason: Optional[str]):
        if self.on_error:
            try:
                self.on_error(kind, reason)
            except Exception as e:
                self.logger.error(f"Error in on_error callback: {e}", exc_info=True)

    def _record(self):
        try:
            self.record_sink.record(CallRecord.from_session(self.session))
        except Exception as e:
            self.logger.warning(f"Call record sink failed: {e}")
