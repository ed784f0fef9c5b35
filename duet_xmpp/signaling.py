"""
Call signals over XMPP.

Each SignalMessage travels as a chat message carrying one child element:

    <message to='bob@example.com' type='chat'>
      <signal xmlns='urn:duet:signal:0'>{"call_id": ..., "type": "offer", ...}</signal>
      <store xmlns='urn:xmpp:hints'/>
    </message>

User ids are bare JIDs. The server stores messages for offline peers, which
gives the store-and-forward behaviour the controller expects; stale offline
copies are dropped by age.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from slixmpp.jid import JID
from slixmpp.stanza import Message
from slixmpp.xmlstream import ET
from slixmpp.xmlstream.handler import Callback
from slixmpp.xmlstream.matcher import MatchXPath

from duet_call.errors import RelayError, SignalDecodeError
from duet_call.protocol.signals import decode_signal, encode_signal
from duet_call.relay import SignalRelay, Subscriptions
from duet_call.session import SignalMessage, SignalType

SIGNAL_NS = 'urn:duet:signal:0'
HINTS_NS = 'urn:xmpp:hints'

# Offline copies older than this are dropped (the call is long gone)
DEFAULT_MAX_SIGNAL_AGE = 120.0


def build_signal_element(signal: SignalMessage):
    """SignalMessage -> <signal xmlns='urn:duet:signal:0'>json</signal>"""
    elem = ET.Element(f'{{{SIGNAL_NS}}}signal')
    elem.text = encode_signal(signal)
    return elem


def parse_signal_element(elem) -> SignalMessage:
    """
    <signal/> element -> SignalMessage.

    Raises:
        SignalDecodeError: Empty element or invalid document
    """
    if elem is None or not (elem.text or '').strip():
        raise SignalDecodeError("Empty signal element")
    return decode_signal(elem.text)


class SignalingMixin:
    """
    Send and receive call signals.

    Requirements (provided by DuetXMPP):
    - self.make_message(), self.register_handler(), self.boundjid
    - self.logger
    - self.max_signal_age: seconds
    """

    def _setup_signal_handlers(self):
        """Register the <signal/> stanza handler. Called from DuetXMPP.__init__."""
        self.on_signal_received: Optional[Callable[[SignalMessage], None]] = None
        self.signal_history: Dict[str, List[SignalMessage]] = {}
        self._history_touched: Dict[str, float] = {}

        self.register_handler(
            Callback('Duet Signal',
                     MatchXPath(f'{{jabber:client}}message/{{{SIGNAL_NS}}}signal'),
                     self._on_signal_message))
        self.logger.debug("Signal handler registered")

    def _on_signal_message(self, msg: Message):
        peer_jid = JID(msg['from']).bare

        stamp = msg['delay']['stamp']
        if stamp:
            age = (datetime.now(timezone.utc) - stamp).total_seconds()
            if age > self.max_signal_age:
                self.logger.info(
                    f"Discarding stale signal from {peer_jid} (delayed {age:.0f}s, "
                    f"limit {self.max_signal_age:.0f}s)"
                )
                return

        try:
            signal = parse_signal_element(msg.xml.find(f'{{{SIGNAL_NS}}}signal'))
        except SignalDecodeError as e:
            self.logger.warning(f"Malformed signal from {peer_jid}: {e}")
            return

        if signal.from_user_id != peer_jid:
            self.logger.warning(
                f"Signal claims sender {signal.from_user_id} but came from {peer_jid}, dropping"
            )
            return

        self.logger.debug(f"Received {signal.type.value} for {signal.call_id} from {peer_jid}")
        self._remember_signal(signal)

        if self.on_signal_received:
            try:
                self.on_signal_received(signal)
            except Exception as e:
                self.logger.error(f"Error in on_signal_received callback: {e}", exc_info=True)

    def send_signal(self, signal: SignalMessage):
        """
        Send one signal to its recipient's bare JID.

        Args:
            signal: Signal to send (to_user_id is the bare JID)
        """
        msg = self.make_message(mto=JID(signal.to_user_id).bare, mtype='chat')
        msg.xml.append(build_signal_element(signal))
        # Ask the server to archive/store it for offline delivery
        msg.xml.append(ET.Element(f'{{{HINTS_NS}}}store'))
        msg.send()

        self._remember_signal(signal)
        self.logger.debug(f"Sent {signal.type.value} for {signal.call_id} to {signal.to_user_id}")


    def _remember_signal(self, signal: SignalMessage):
        """Keep a signal for history(); calls idle longer than max_signal_age are forgotten."""
        now = time.monotonic()
        expired = [call_id for call_id, touched in self._history_touched.items()
                   if now - touched > self.max_signal_age]
        for call_id in expired:
            del self._history_touched[call_id]
            self.signal_history.pop(call_id, None)
        if expired:
            self.logger.debug(f"Forgot signal history of {len(expired)} idle call(s)")

        self.signal_history.setdefault(signal.call_id, []).append(signal)
        self._history_touched[signal.call_id] = now


class XmppSignalRelay(SignalRelay):
    """SignalRelay on top of a DuetXMPP client."""

    def __init__(self, client, logger: Optional[logging.Logger] = None):
        """
        Args:
            client: Connected DuetXMPP (anything with send_signal, signal_history,
                on_signal_received and is_connected)
            logger: Logger instance
        """
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self._calls = Subscriptions()
        self._inboxes = Subscriptions()
        client.on_signal_received = self._deliver

    @property
    def local_user_id(self) -> str:
        return self.client.boundjid.bare

    async def publish(self, call_id: str, from_user_id: str, to_user_id: str,
                      type: SignalType, payload: Dict[str, Any]) -> SignalMessage:
        if not self.client.is_connected():
            raise RelayError("XMPP stream not connected")

        signal = SignalMessage(
            call_id=call_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            type=SignalType(type),
            payload=dict(payload or {}),
        )
        try:
            self.client.send_signal(signal)
        except (OSError, ValueError) as e:
            raise RelayError(f"Sending {signal.type.value} failed: {e}")
        return signal

    def _deliver(self, signal: SignalMessage):
        targets = self._calls.get(signal.call_id) + self._inboxes.get(signal.to_user_id)
        for callback in targets:
            try:
                callback(signal)
            except Exception as e:
                self.logger.error(f"Error in signal subscriber for {signal.call_id}: {e}", exc_info=True)

    def subscribe(self, call_id: str, on_message):
        return self._calls.add(call_id, on_message)

    def subscribe_inbox(self, user_id: str, on_message):
        return self._inboxes.add(JID(user_id).bare, on_message)

    async def history(self, call_id: str, type: Optional[SignalType] = None) -> List[SignalMessage]:
        signals = self.client.signal_history.get(call_id, [])
        if type is not None:
            signals = [s for s in signals if s.type == type]
        return list(signals)
