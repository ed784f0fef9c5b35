"""
PeerConnectionAdapter - the only code that touches RTCPeerConnection.

Wraps one aiortc peer connection plus the local capture tracks of a call:
- offer/answer creation and description handling (remote applied once per type)
- remote ICE candidates (idempotent, end-of-candidates tolerated)
- mute / video-off by toggling the local tracks
- screen share by replacing the outgoing video track in place (no renegotiation)

Everything above this layer works with plain payload dicts:
    description: {"type": "offer"|"answer", "sdp": "..."}
    candidate:   {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .media import LocalMediaTrack, LocalStream, MediaSource
from .protocol.signals import candidate_key, description_payload


class RemoteStream:
    """Inbound tracks of the remote peer."""

    def __init__(self):
        self.id = str(uuid.uuid4())
        self.tracks: List[Any] = []

    def add_track(self, track):
        if track not in self.tracks:
            self.tracks.append(track)

    @property
    def audio(self):
        return next((t for t in self.tracks if t.kind == 'audio'), None)

    @property
    def video(self):
        return next((t for t in self.tracks if t.kind == 'video'), None)

    def __repr__(self):
        kinds = ','.join(t.kind for t in self.tracks)
        return f"RemoteStream(id={self.id[:8]}, tracks=[{kinds}])"


def build_configuration(ice_servers: Optional[List[Dict[str, Any]]]) -> RTCConfiguration:
    """
    Convert ICE server dicts into an aiortc configuration.

    Args:
        ice_servers: [{"urls": str|[str], "username": ..., "credential": ...}]
    """
    servers = []
    for server in ice_servers or []:
        urls = server.get('urls')
        if not urls:
            continue
        servers.append(RTCIceServer(
            urls=urls,
            username=server.get('username'),
            credential=server.get('credential'),
        ))
    return RTCConfiguration(iceServers=servers)


def candidate_payload(candidate) -> Dict[str, Any]:
    """RTCIceCandidate -> browser-style candidate dict."""
    return {
        'candidate': 'candidate:' + candidate_to_sdp(candidate),
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }


class PeerConnectionAdapter:
    """
    One peer connection, its local stream and an optional display track.

    Owned by exactly one CallSessionController.
    """

    def __init__(self, media_source: MediaSource,
                 ice_servers: Optional[List[Dict[str, Any]]] = None,
                 connection_factory: Optional[Callable[[RTCConfiguration], Any]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            media_source: Where local capture comes from
            ice_servers: STUN/TURN servers ({"urls", "username", "credential"})
            connection_factory: Builds the peer connection from a configuration
                (defaults to RTCPeerConnection)
            logger: Logger instance
        """
        self.media_source = media_source
        self.logger = logger or logging.getLogger(__name__)

        factory = connection_factory or (lambda config: RTCPeerConnection(configuration=config))
        self.pc = factory(build_configuration(ice_servers))

        self.local_stream: Optional[LocalStream] = None
        self.remote_stream: Optional[RemoteStream] = None
        self._video_sender = None
        self._display_track: Optional[LocalMediaTrack] = None

        self._remote_types = set()
        self._applied_candidates = set()
        self._closed = False

        # Callbacks (set by the controller)
        self._on_ice_candidate: Optional[Callable] = None
        self._on_track: Optional[Callable] = None
        self._on_state_change: Optional[Callable] = None
        self._on_screen_share_ended: Optional[Callable] = None

        self.pc.on('icecandidate', self._handle_ice_candidate)
        self.pc.on('track', self._handle_track)
        self.pc.on('connectionstatechange', self._handle_connection_state)

    # ========================================================================
    # Callback registration
    # ========================================================================

    def on_ice_candidate(self, callback: Callable[[Dict[str, Any]], None]):
        self._on_ice_candidate = callback

    def on_track(self, callback: Callable[[Any], None]):
        self._on_track = callback

    def on_connection_state_change(self, callback: Callable[[str], None]):
        self._on_state_change = callback

    def on_screen_share_ended(self, callback: Callable[[], None]):
        """Called when the display track ends on its own and the camera is restored."""
        self._on_screen_share_ended = callback

    # ========================================================================
    # Peer connection events
    # ========================================================================

    def _handle_ice_candidate(self, candidate=None):
        # aiortc embeds candidates in the local description; this only fires
        # for stacks that trickle
        candidate = getattr(candidate, 'candidate', candidate)
        if candidate is None or self._on_ice_candidate is None:
            return
        try:
            self._on_ice_candidate(candidate_payload(candidate))
        except Exception as e:
            self.logger.error(f"Error in on_ice_candidate callback: {e}", exc_info=True)

    def _handle_track(self, track):
        self.logger.info(f"Remote {track.kind} track received")
        if self.remote_stream is None:
            self.remote_stream = RemoteStream()
        self.remote_stream.add_track(track)
        if self._on_track:
            try:
                self._on_track(track)
            except Exception as e:
                self.logger.error(f"Error in on_track callback: {e}", exc_info=True)

    def _handle_connection_state(self):
        state = self.pc.connectionState
        self.logger.debug(f"Peer connection state: {state}")
        if self._on_state_change:
            try:
                self._on_state_change(state)
            except Exception as e:
                self.logger.error(f"Error in on_connection_state_change callback: {e}", exc_info=True)

    # ========================================================================
    # Media
    # ========================================================================

    async def acquire_local_media(self, has_video: bool) -> LocalStream:
        """
        Open microphone (and camera) and attach the tracks to the connection.

        Raises:
            MediaAccessDenied: Capture refused; nothing is attached
        """
        stream = await self.media_source.get_user_media(audio=True, video=has_video)
        if self._closed:
            # Torn down while the devices were opening
            stream.stop()
            return stream
        self.local_stream = stream

        for track in stream.tracks():
            sender = self.pc.addTrack(track)
            if track.kind == 'video':
                self._video_sender = sender

        self.logger.info(f"Local media attached: {[t.kind for t in stream.tracks()]}")
        return stream

    def mute_audio(self, muted: bool) -> bool:
        if self.local_stream is None or self.local_stream.audio is None:
            return False
        self.local_stream.audio.enabled = not muted
        self.logger.info(f"Microphone {'muted' if muted else 'unmuted'}")
        return True

    def disable_video(self, disabled: bool) -> bool:
        if self.local_stream is None or self.local_stream.video is None:
            return False
        self.local_stream.video.enabled = not disabled
        self.logger.info(f"Camera {'off' if disabled else 'on'}")
        return True

    @property
    def is_screen_sharing(self) -> bool:
        return self._display_track is not None

    async def start_screen_share(self) -> bool:
        """
        Send the display instead of the camera on the existing video sender.

        Returns:
            False if the call has no video sender

        Raises:
            MediaAccessDenied: Display capture refused
        """
        if self._closed or self._video_sender is None:
            self.logger.warning("Screen share needs an outgoing video track")
            return False

        display = await self.media_source.get_display_media()

        previous, self._display_track = self._display_track, display
        await self._replace_video_track(display)
        if previous is not None:
            previous.stop()

        display.on('ended', lambda: self._display_ended(display))
        self.logger.info("Screen share started")
        return True

    async def stop_screen_share(self) -> bool:
        """Restore the camera track and stop the display track."""
        display = self._display_track
        if display is None:
            return False
        self._display_track = None

        camera = self.local_stream.video if self.local_stream else None
        if not self._closed:
            await self._replace_video_track(camera)
        display.stop()
        self.logger.info("Screen share stopped, camera restored")
        return True

    def _display_ended(self, display):
        if self._display_track is not display:
            return
        self.logger.info("Display capture ended by user")
        asyncio.ensure_future(self._restore_after_display_end())

    async def _restore_after_display_end(self):
        if await self.stop_screen_share() and self._on_screen_share_ended:
            try:
                self._on_screen_share_ended()
            except Exception as e:
                self.logger.error(f"Error in on_screen_share_ended callback: {e}", exc_info=True)

    async def _replace_video_track(self, track):
        result = self._video_sender.replaceTrack(track)
        if asyncio.iscoroutine(result):
            await result

    # ========================================================================
    # Negotiation
    # ========================================================================

    async def create_offer(self) -> Dict[str, str]:
        offer = await self.pc.createOffer()
        return description_payload(offer.sdp, offer.type)

    async def create_answer(self) -> Dict[str, str]:
        answer = await self.pc.createAnswer()
        return description_payload(answer.sdp, answer.type)

    async def set_local_description(self, payload: Dict[str, str]) -> Dict[str, str]:
        """
        Apply a local description.

        Returns:
            The final local description (with gathered candidates embedded)
        """
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=payload['sdp'], type=payload['type']))
        local = self.pc.localDescription
        return description_payload(local.sdp, local.type)

    async def set_remote_description(self, payload: Dict[str, str]) -> bool:
        """
        Apply a remote description once per type.

        Returns:
            True if applied, False for a repeat (no-op)
        """
        sdp_type = payload.get('type')
        if sdp_type in self._remote_types:
            self.logger.debug(f"Remote {sdp_type} already applied, ignoring")
            return False

        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=payload['sdp'], type=sdp_type))
        self._remote_types.add(sdp_type)
        self.logger.info(f"Remote {sdp_type} applied")
        return True

    @property
    def has_remote_description(self) -> bool:
        return bool(self._remote_types)

    async def add_ice_candidate(self, payload: Dict[str, Any]) -> bool:
        """
        Add a remote candidate.

        Returns:
            True if handed to the connection, False for duplicates,
            end-of-candidates markers and unparseable candidates
        """
        sdp = (payload or {}).get('candidate') or ''
        if not sdp.strip():
            self.logger.debug("End-of-candidates marker, nothing to add")
            return False

        key = candidate_key(payload)
        if key in self._applied_candidates:
            self.logger.debug("Duplicate remote candidate, ignoring")
            return False

        sdp = sdp.strip()
        if sdp.startswith('candidate:'):
            sdp = sdp[len('candidate:'):]
        if len(sdp.split()) < 8:
            self.logger.warning(f"Malformed ICE candidate ignored: {sdp!r}")
            return False

        try:
            candidate = candidate_from_sdp(sdp)
        except (ValueError, IndexError) as e:
            self.logger.warning(f"Malformed ICE candidate ignored: {e}")
            return False
        candidate.sdpMid = payload.get('sdpMid')
        candidate.sdpMLineIndex = payload.get('sdpMLineIndex')

        self._applied_candidates.add(key)
        await self.pc.addIceCandidate(candidate)
        self.logger.debug(f"Added remote candidate: {sdp}")
        return True

    # ========================================================================
    # Diagnostics / teardown
    # ========================================================================

    async def get_stats(self) -> Dict[str, Any]:
        """
        Connection diagnostics.

        Returns:
            Dict with connection/ICE states, sender and receiver counts and a
            count of RTC stats reports by type
        """
        report_types: Dict[str, int] = {}
        if not self._closed:
            report = await self.pc.getStats()
            for stats in report.values():
                report_types[stats.type] = report_types.get(stats.type, 0) + 1

        return {
            'connection_state': self.pc.connectionState,
            'ice_connection_state': self.pc.iceConnectionState,
            'ice_gathering_state': self.pc.iceGatheringState,
            'signaling_state': self.pc.signalingState,
            'senders': len(self.pc.getSenders()),
            'receivers': len(self.pc.getReceivers()),
            'screen_sharing': self.is_screen_sharing,
            'reports': report_types,
        }

    def stop_local_tracks(self):
        """Release capture devices (idempotent, synchronous)."""
        display, self._display_track = self._display_track, None
        if display is not None:
            display.stop()
        if self.local_stream is not None:
            self.local_stream.stop()

    async def teardown(self):
        """Stop every local track and close the connection (idempotent)."""
        if self._closed:
            return
        self._closed = True

        self.stop_local_tracks()
        try:
            await self.pc.close()
        except Exception as e:
            self.logger.warning(f"Error closing peer connection: {e}")

        self._video_sender = None
        self._applied_candidates.clear()
        self.logger.info("Peer connection torn down")

    @property
    def closed(self) -> bool:
        return self._closed
