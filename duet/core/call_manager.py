"""
CallManager - call handling for one local user.

Responsibilities:
- One call at a time (second call attempts raise CallBusy, incoming offers
  while busy are auto-declined with reason 'busy')
- Incoming call ringing with a timeout for unanswered calls
- Building a CallSessionController + PeerConnectionAdapter per call
- Forwarding session events to the UI callbacks
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from duet_call.adapter import PeerConnectionAdapter
from duet_call.controller import CallSessionController
from duet_call.errors import CallBusy, ErrorKind
from duet_call.media import MediaSource
from duet_call.protocol.signals import offer_has_video
from duet_call.records import CallRecordSink, LoggingCallRecordSink
from duet_call.relay import SignalRelay
from duet_call.session import CallSession, SignalMessage, SignalType

from ..utils.logger import get_call_logger
from .settings import CallSettings


@dataclass
class IncomingCall:
    """An offer waiting for the user to accept or decline."""
    call_id: str
    from_user_id: str
    has_video: bool
    received_at: float = field(default_factory=time.time)
    timer: Any = None


class CallManager:
    """Manages calls for one local user."""

    def __init__(self, user_id: str, relay: SignalRelay, media_source: MediaSource,
                 settings: Optional[CallSettings] = None,
                 record_sink: Optional[CallRecordSink] = None,
                 connection_factory: Optional[Callable] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            user_id: Local user id
            relay: Signal relay shared by all calls of this user
            media_source: Local capture
            settings: Call settings (defaults if omitted)
            record_sink: Call record sink (logging sink if omitted)
            connection_factory: Peer connection factory passed to each adapter
            logger: Logger instance
        """
        self.user_id = user_id
        self.relay = relay
        self.media_source = media_source
        self.settings = settings or CallSettings()
        self.record_sink = record_sink or LoggingCallRecordSink()
        self.connection_factory = connection_factory
        self.logger = logger or logging.getLogger(__name__)

        # ICE servers for new calls (settings, possibly extended by XEP-0215 discovery)
        self.ice_servers: List[Dict[str, Any]] = list(self.settings.ice_servers)

        self.controller: Optional[CallSessionController] = None
        self.pending: Dict[str, IncomingCall] = {}
        # call id -> when it was accepted/declined/cancelled (offer dedup window)
        self._finished_calls: Dict[str, float] = {}
        self._declines: List[CallSessionController] = []
        self._reapers = set()
        self._unsubscribe_inbox: Optional[Callable[[], None]] = None

        # UI callbacks
        self.on_incoming_call: Optional[Callable[[str, str, bool], None]] = None
        self.on_incoming_call_cancelled: Optional[Callable[[str, str], None]] = None
        self.on_state_change: Optional[Callable[[CallSession], None]] = None
        self.on_remote_stream: Optional[Callable[[Any], None]] = None
        self.on_error: Optional[Callable[[ErrorKind, Optional[str]], None]] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Start listening for incoming calls."""
        if self._unsubscribe_inbox is None:
            self._unsubscribe_inbox = self.relay.subscribe_inbox(self.user_id, self._on_inbox_signal)
            self.logger.info(f"Listening for calls to {self.user_id}")

    async def close(self):
        """Hang up, decline ringing calls and wait for teardown."""
        if self._unsubscribe_inbox is not None:
            self._unsubscribe_inbox()
            self._unsubscribe_inbox = None

        for call_id in list(self.pending):
            self.decline_call(call_id, reason='shutdown')
        self.hangup('shutdown')

        controllers = list(self._declines)
        if self.controller is not None:
            controllers.append(self.controller)
        for controller in controllers:
            await controller.wait_closed()
        if self._reapers:
            await asyncio.gather(*list(self._reapers))
        self._declines.clear()

    # ========================================================================
    # State
    # ========================================================================

    @property
    def session(self) -> Optional[CallSession]:
        return self.controller.session if self.controller else None

    def has_active_call(self, exclude_call_id: Optional[str] = None) -> bool:
        session = self.session
        if session is None or session.is_terminal:
            return False
        return session.call_id != exclude_call_id

    # ========================================================================
    # Call operations
    # ========================================================================

    async def start_call(self, remote_user_id: str, has_video: bool = False) -> CallSession:
        """
        Call another user.

        Raises:
            CallBusy: A call is already active
            MediaAccessDenied: Capture refused
        """
        if self.has_active_call():
            raise CallBusy(f"Already in call {self.session.call_id}")

        call_id = str(uuid.uuid4())
        self.controller = self._new_controller(call_id)
        self._mark_finished(call_id)
        return await self.controller.start_outgoing(remote_user_id, has_video)

    async def accept_call(self, call_id: str, has_video: Optional[bool] = None) -> CallSession:
        """
        Accept a ringing call.

        Args:
            call_id: Call to accept
            has_video: Send video (default: whether the offer carries video)

        Raises:
            CallBusy: A call is already active
            MediaAccessDenied: Capture refused
        """
        if self.has_active_call():
            raise CallBusy(f"Already in call {self.session.call_id}")

        incoming = self._take_pending(call_id)
        if has_video is None:
            has_video = incoming.has_video if incoming else False
        remote_user_id = incoming.from_user_id if incoming else None

        self.controller = self._new_controller(call_id)
        self._mark_finished(call_id)
        return await self.controller.accept_incoming(call_id, has_video, remote_user_id=remote_user_id)

    def decline_call(self, call_id: str, reason: str = 'declined'):
        """Decline a ringing call (no media is touched)."""
        incoming = self._take_pending(call_id)
        self._decline(call_id, incoming.from_user_id if incoming else None, reason)

    def _decline(self, call_id: str, remote_user_id: Optional[str], reason: str):
        self._mark_finished(call_id)
        controller = self._new_controller(call_id, ui=False)
        controller.decline(call_id, remote_user_id=remote_user_id, reason=reason)
        self._declines.append(controller)
        reaper = asyncio.ensure_future(self._forget_when_closed(controller))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _forget_when_closed(self, controller: CallSessionController):
        try:
            await controller.wait_closed()
        finally:
            if controller in self._declines:
                self._declines.remove(controller)

    def hangup(self, reason: str = 'hangup'):
        if self.controller is not None:
            self.controller.end_call(reason)

    def mute_audio(self, muted: bool) -> bool:
        return self.controller.mute_audio(muted) if self.controller else False

    def disable_video(self, disabled: bool) -> bool:
        return self.controller.disable_video(disabled) if self.controller else False

    async def start_screen_share(self) -> bool:
        return await self.controller.start_screen_share() if self.controller else False

    async def stop_screen_share(self) -> bool:
        return await self.controller.stop_screen_share() if self.controller else False

    async def get_call_stats(self) -> Dict[str, Any]:
        if self.controller is None:
            return {}
        return await self.controller.get_stats()

    # ========================================================================
    # Incoming calls
    # ========================================================================

    def _on_inbox_signal(self, signal: SignalMessage):
        if signal.to_user_id != self.user_id:
            return

        if signal.type == SignalType.OFFER:
            self._on_offer(signal)
        elif signal.type in (SignalType.HANGUP, SignalType.DECLINE) and signal.call_id in self.pending:
            # Caller gave up before we answered
            incoming = self._take_pending(signal.call_id)
            self._mark_finished(signal.call_id)
            reason = signal.payload.get('reason') or 'cancelled'
            self.logger.info(f"Incoming call {signal.call_id} from {incoming.from_user_id} cancelled ({reason})")
            if self.on_incoming_call_cancelled:
                try:
                    self.on_incoming_call_cancelled(signal.call_id, reason)
                except Exception as e:
                    self.logger.error(f"Error in on_incoming_call_cancelled callback: {e}", exc_info=True)

    def _on_offer(self, signal: SignalMessage):
        call_id = signal.call_id
        self._prune_finished()
        if call_id in self.pending or call_id in self._finished_calls:
            self.logger.debug(f"Offer for known call {call_id} ignored")
            return

        age = time.time() - signal.sent_at
        if age > self.settings.ring_timeout:
            self.logger.info(f"Discarding stale offer {call_id} from {signal.from_user_id} ({age:.0f}s old)")
            return

        if self.has_active_call(exclude_call_id=call_id):
            self.logger.warning(f"Auto-declining incoming call (busy): {call_id} from {signal.from_user_id}")
            self._decline(call_id, signal.from_user_id, 'busy')
            return

        incoming = IncomingCall(call_id, signal.from_user_id, offer_has_video(signal.payload))
        incoming.timer = asyncio.get_running_loop().call_later(
            self.settings.ring_timeout, self._on_ring_timeout, call_id
        )
        self.pending[call_id] = incoming
        self.logger.info(
            f"Incoming {'video' if incoming.has_video else 'audio'} call from {incoming.from_user_id} "
            f"(call {call_id}, ringing for {self.settings.ring_timeout:g}s)"
        )

        if self.on_incoming_call:
            try:
                self.on_incoming_call(call_id, incoming.from_user_id, incoming.has_video)
            except Exception as e:
                self.logger.error(f"Error in on_incoming_call callback: {e}", exc_info=True)

    def _on_ring_timeout(self, call_id: str):
        if call_id not in self.pending:
            return
        self.logger.warning(f"Incoming call timeout ({self.settings.ring_timeout:g}s): {call_id}")
        self.decline_call(call_id, reason='timeout')
        if self.on_incoming_call_cancelled:
            try:
                self.on_incoming_call_cancelled(call_id, 'timeout')
            except Exception as e:
                self.logger.error(f"Error in on_incoming_call_cancelled callback: {e}", exc_info=True)

    def _mark_finished(self, call_id: str):
        self._finished_calls[call_id] = time.time()

    def _prune_finished(self):
        # Offers older than ring_timeout are discarded by age, so the ids can go
        cutoff = time.time() - self.settings.ring_timeout
        for call_id in [c for c, finished_at in self._finished_calls.items() if finished_at < cutoff]:
            del self._finished_calls[call_id]

    def _take_pending(self, call_id: str) -> Optional[IncomingCall]:
        incoming = self.pending.pop(call_id, None)
        if incoming is not None and incoming.timer is not None:
            incoming.timer.cancel()
            self.logger.debug(f"Canceled ring timer: {call_id}")
        return incoming

    # ========================================================================
    # Controller wiring
    # ========================================================================

    def _new_controller(self, call_id: str, ui: bool = True) -> CallSessionController:
        call_logger = get_call_logger(call_id)
        controller = CallSessionController(
            self.user_id,
            self.relay,
            adapter_factory=lambda: self._create_adapter(call_logger),
            call_id=call_id,
            record_sink=self.record_sink,
            logger=call_logger,
            **self.settings.controller_options(),
        )
        if ui:
            controller.on_state_change = self._forward_state_change
            controller.on_remote_stream = self._forward_remote_stream
            controller.on_error = self._forward_error
        return controller

    def _create_adapter(self, logger: logging.Logger) -> PeerConnectionAdapter:
        return PeerConnectionAdapter(
            self.media_source,
            ice_servers=self.ice_servers,
            connection_factory=self.connection_factory,
            logger=logger,
        )

    def _forward_state_change(self, session: CallSession):
        if self.on_state_change:
            try:
                self.on_state_change(session)
            except Exception as e:
                self.logger.error(f"Error in on_state_change callback: {e}", exc_info=True)

    def _forward_remote_stream(self, stream):
        if self.on_remote_stream:
            try:
                self.on_remote_stream(stream)
            except Exception as e:
                self.logger.error(f"Error in on_remote_stream callback: {e}", exc_info=True)

    def _forward_error(self, kind: ErrorKind, reason: Optional[str]):
        if self.on_error:
            try:
                self.on_error(kind, reason)
            except Exception as e:
                self.logger.error(f"Error in on_error callback: {e}", exc_info=True)
