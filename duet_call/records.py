"""
Call records.

The controller reports notable transitions (connected, declined, ended,
failed) to a CallRecordSink. Recording is fire-and-forget: a sink failure is
logged and never changes the call.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .session import CallSession


@dataclass
class CallRecord:
    """Snapshot of a call at a reported transition."""
    call_id: str
    local_user_id: str
    remote_user_id: str
    role: str
    has_video: bool
    status: str
    reason: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0
    created_at: float = 0.0
    connected_at: Optional[float] = None
    ended_at: Optional[float] = None
    recorded_at: float = field(default_factory=time.time)

    @classmethod
    def from_session(cls, session: CallSession) -> 'CallRecord':
        return cls(
            call_id=session.call_id,
            local_user_id=session.local_user_id,
            remote_user_id=session.remote_user_id,
            role=session.role.value,
            has_video=session.has_video,
            status=session.status.value,
            reason=session.end_reason,
            error=session.error.value if session.error is not None else None,
            duration=round(session.duration, 1),
            created_at=session.created_at,
            connected_at=session.connected_at,
            ended_at=session.ended_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CallRecordSink:
    """Receives call records. Implementations must not block."""

    def record(self, record: CallRecord):
        raise NotImplementedError


class LoggingCallRecordSink(CallRecordSink):
    """Writes records to the log (default sink)."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def record(self, record: CallRecord):
        line = f"Call {record.call_id}: {record.status} ({record.role}, remote={record.remote_user_id}"
        if record.duration:
            line += f", duration={record.duration}s"
        if record.reason:
            line += f", reason={record.reason}"
        self.logger.info(line + ")")


class MemoryCallRecordSink(CallRecordSink):
    """Keeps records in a list (diagnostics, tests)."""

    def __init__(self):
        self.records: List[CallRecord] = []

    def record(self, record: CallRecord):
        self.records.append(record)

    def statuses(self, call_id: str) -> List[str]:
        return [r.status for r in self.records if r.call_id == call_id]
