"""
IceCandidateBuffer - remote ICE candidates waiting for a remote description.

Candidates can reach us before the offer (answerer) or before the answer
(offerer) because the relay does not order messages. They are parked here and
applied in arrival order right after the remote description is set.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .protocol.signals import candidate_key


@dataclass
class BufferedCandidate:
    """A parked candidate payload plus the sender's timestamp."""
    payload: Dict[str, Any]
    sent_at: float


class IceCandidateBuffer:
    """
    FIFO of un-applied remote candidates for one call.

    Drained exactly once. After the drain the buffer refuses new candidates:
    the controller applies them directly from then on.
    """

    def __init__(self, call_id: str, logger: Optional[logging.Logger] = None):
        self.call_id = call_id
        self.logger = logger or logging.getLogger(__name__)
        self._queue: List[BufferedCandidate] = []
        self._keys = set()
        self._drained = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def drained(self) -> bool:
        return self._drained

    def push(self, candidate: Dict[str, Any], sent_at: Optional[float] = None) -> bool:
        """
        Park a candidate.

        Args:
            candidate: Candidate payload ({"candidate", "sdpMid", "sdpMLineIndex"})
            sent_at: Sender timestamp (kept for diagnostics)

        Returns:
            True if queued, False for a duplicate or a buffer already drained
        """
        if self._drained:
            self.logger.debug(f"ICE buffer for {self.call_id} already drained, candidate not queued")
            return False

        key = candidate_key(candidate)
        if key in self._keys:
            self.logger.debug(f"Duplicate buffered candidate for {self.call_id}, ignoring")
            return False

        self._keys.add(key)
        self._queue.append(BufferedCandidate(candidate, sent_at if sent_at is not None else time.time()))
        self.logger.debug(f"Buffered ICE candidate for {self.call_id} (queue_size={len(self._queue)})")
        return True

    async def drain_into(self, adapter) -> int:
        """
        Apply all parked candidates to the adapter in arrival order, then clear.

        Args:
            adapter: Object with an async add_ice_candidate(payload) method

        Returns:
            Number of candidates applied
        """
        if self._drained:
            return 0
        self._drained = True

        pending, self._queue = self._queue, []
        if not pending:
            return 0

        oldest = time.time() - min(entry.sent_at for entry in pending)
        self.logger.info(
            f"Draining {len(pending)} buffered ICE candidates for {self.call_id} "
            f"(oldest sent {oldest:.1f}s ago)"
        )

        applied = 0
        for entry in pending:
            await adapter.add_ice_candidate(entry.payload)
            applied += 1
        return applied

    def clear(self):
        """Drop everything (call teardown)."""
        if self._queue:
            self.logger.debug(f"Discarding {len(self._queue)} buffered ICE candidates for {self.call_id}")
        self._queue.clear()
        self._keys.clear()
        self._drained = True
