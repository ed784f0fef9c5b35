"""
Signal relay contract and an in-process implementation.

A relay is store-and-forward: every published signal is appended to the
call's history and pushed to live subscribers. Delivery is at-least-once and
unordered; nothing above this layer may assume otherwise.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .errors import RelayError
from .session import SignalMessage, SignalType

SignalCallback = Callable[[SignalMessage], None]
Unsubscribe = Callable[[], None]


class SignalRelay(ABC):
    """Transport for SignalMessages between the two peers of a call."""

    @abstractmethod
    async def publish(self, call_id: str, from_user_id: str, to_user_id: str,
                      type: SignalType, payload: Dict[str, Any]) -> SignalMessage:
        """
        Append a signal to the call's stream.

        Raises:
            RelayError: The write failed (callers retry)
        """

    @abstractmethod
    def subscribe(self, call_id: str, on_message: SignalCallback) -> Unsubscribe:
        """Receive every signal of a call. Returns an unsubscribe function."""

    @abstractmethod
    def subscribe_inbox(self, user_id: str, on_message: SignalCallback) -> Unsubscribe:
        """Receive every signal addressed to a user (incoming call detection)."""

    @abstractmethod
    async def history(self, call_id: str, type: Optional[SignalType] = None) -> List[SignalMessage]:
        """Signals already stored for a call, oldest first."""


class Subscriptions:
    """Callback lists keyed by call id or user id."""

    def __init__(self):
        self._callbacks: Dict[str, List[SignalCallback]] = {}

    def add(self, key: str, callback: SignalCallback) -> Unsubscribe:
        self._callbacks.setdefault(key, []).append(callback)

        def unsubscribe():
            callbacks = self._callbacks.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._callbacks[key]

        return unsubscribe

    def get(self, key: str) -> List[SignalCallback]:
        return list(self._callbacks.get(key, ()))

    def count(self, key: str) -> int:
        return len(self._callbacks.get(key, ()))


class InMemorySignalRelay(SignalRelay):
    """
    Process-local relay.

    Deliveries are scheduled on the event loop (never synchronous with
    publish), so subscribers see the same asynchrony as with a network relay.
    """

    def __init__(self, duplicate_delivery: bool = False, logger: Optional[logging.Logger] = None):
        """
        Args:
            duplicate_delivery: Deliver every signal twice (at-least-once simulation)
            logger: Logger instance
        """
        self.duplicate_delivery = duplicate_delivery
        self.logger = logger or logging.getLogger(__name__)

        self.fail_publishes = 0  # Number of upcoming publishes that raise RelayError
        self.published: List[SignalMessage] = []

        self._store: Dict[str, List[SignalMessage]] = {}
        self._calls = Subscriptions()
        self._inboxes = Subscriptions()

    async def publish(self, call_id, from_user_id, to_user_id, type, payload) -> SignalMessage:
        if self.fail_publishes > 0:
            self.fail_publishes -= 1
            raise RelayError(f"Relay write failed for {type.value} on {call_id}")

        signal = SignalMessage(
            call_id=call_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            type=SignalType(type),
            payload=dict(payload or {}),
        )
        self._store.setdefault(call_id, []).append(signal)
        self.published.append(signal)
        self.logger.debug(f"Relay stored {signal.type.value} for {call_id} ({from_user_id} -> {to_user_id})")

        loop = asyncio.get_running_loop()
        copies = 2 if self.duplicate_delivery else 1
        targets = self._calls.get(call_id) + self._inboxes.get(to_user_id)
        for callback in targets:
            for _ in range(copies):
                loop.call_soon(self._deliver, callback, signal)
        return signal

    def _deliver(self, callback: SignalCallback, signal: SignalMessage):
        try:
            callback(signal)
        except Exception as e:
            self.logger.error(f"Error in relay subscriber for {signal.call_id}: {e}", exc_info=True)

    def subscribe(self, call_id: str, on_message: SignalCallback) -> Unsubscribe:
        return self._calls.add(call_id, on_message)

    def subscribe_inbox(self, user_id: str, on_message: SignalCallback) -> Unsubscribe:
        return self._inboxes.add(user_id, on_message)

    async def history(self, call_id: str, type: Optional[SignalType] = None) -> List[SignalMessage]:
        signals = self._store.get(call_id, [])
        if type is not None:
            signals = [s for s in signals if s.type == type]
        return list(signals)

    def subscriber_count(self, call_id: str) -> int:
        return self._calls.count(call_id)
