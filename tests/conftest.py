"""
Shared fixtures and fakes.

FakeAdapter stands in for PeerConnectionAdapter in controller tests so the
state machine can be driven without devices or network. FakePeerConnection
stands in for RTCPeerConnection in adapter tests.
"""

import asyncio
from types import SimpleNamespace

import pytest
from aiortc import RTCSessionDescription

from duet_call.controller import CallSessionController
from duet_call.errors import MediaAccessDenied
from duet_call.records import MemoryCallRecordSink
from duet_call.relay import InMemorySignalRelay


AUDIO_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
VIDEO_SDP = AUDIO_SDP + "m=video 9 UDP/TLS/RTP/SAVPF 96\r\n"


def make_candidate(n: int, mid: str = '0') -> dict:
    return {
        'candidate': f'candidate:{n} 1 udp 2130706431 192.168.1.{n} {50000 + n} typ host',
        'sdpMid': mid,
        'sdpMLineIndex': 0,
    }


async def settle(*controllers, rounds: int = 5):
    """Let relay deliveries and mailbox handlers run to quiescence."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        for controller in controllers:
            await controller.settle()


# ============================================================================
# Controller fakes
# ============================================================================

class FakeStream:
    def __init__(self, has_video: bool):
        self.has_video = has_video
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeAdapter:
    """Records what the controller asks of the peer connection."""

    def __init__(self, media_error: Exception = None, media_delay: float = 0):
        self.media_error = media_error
        self.media_delay = media_delay
        self.log = []
        self.remote_descriptions = []
        self.applied_candidates = []
        self.candidate_before_remote = False
        self.local_stream = None
        self.remote_stream = None
        self.tracks_stopped = False
        self.closed = False
        self.muted = False
        self.video_off = False
        self.sharing = False
        self.share_error = None
        self._has_video = False
        self._ice_cb = None
        self._track_cb = None
        self._state_cb = None
        self._share_ended_cb = None

    # Callback registration
    def on_ice_candidate(self, cb):
        self._ice_cb = cb

    def on_track(self, cb):
        self._track_cb = cb

    def on_connection_state_change(self, cb):
        self._state_cb = cb

    def on_screen_share_ended(self, cb):
        self._share_ended_cb = cb

    # Test drivers
    def emit_state(self, state: str):
        self._state_cb(state)

    def emit_track(self, kind: str = 'audio'):
        track = SimpleNamespace(kind=kind)
        if self.remote_stream is None:
            self.remote_stream = SimpleNamespace(tracks=[])
        self.remote_stream.tracks.append(track)
        self._track_cb(track)

    def emit_local_candidate(self, candidate: dict):
        self._ice_cb(candidate)

    # Adapter interface
    async def acquire_local_media(self, has_video):
        self.log.append('acquire')
        if self.media_delay:
            await asyncio.sleep(self.media_delay)
        if self.media_error is not None:
            raise self.media_error
        self._has_video = has_video
        self.local_stream = FakeStream(has_video)
        return self.local_stream

    async def create_offer(self):
        self.log.append('create_offer')
        return {'type': 'offer', 'sdp': VIDEO_SDP if self._has_video else AUDIO_SDP}

    async def create_answer(self):
        self.log.append('create_answer')
        return {'type': 'answer', 'sdp': VIDEO_SDP if self._has_video else AUDIO_SDP}

    async def set_local_description(self, payload):
        self.log.append(f"local_{payload['type']}")
        return payload

    async def set_remote_description(self, payload):
        if any(p['type'] == payload['type'] for p in self.remote_descriptions):
            return False
        self.log.append(f"remote_{payload['type']}")
        self.remote_descriptions.append(payload)
        return True

    @property
    def has_remote_description(self):
        return bool(self.remote_descriptions)

    async def add_ice_candidate(self, payload):
        if not self.remote_descriptions:
            self.candidate_before_remote = True
        if payload in self.applied_candidates:
            return False
        self.log.append('candidate')
        self.applied_candidates.append(payload)
        return True

    def mute_audio(self, muted):
        self.muted = muted
        return True

    def disable_video(self, disabled):
        if not self._has_video:
            return False
        self.video_off = disabled
        return True

    @property
    def is_screen_sharing(self):
        return self.sharing

    async def start_screen_share(self):
        if self.share_error is not None:
            raise self.share_error
        if not self._has_video:
            return False
        self.sharing = True
        return True

    async def stop_screen_share(self):
        was_sharing, self.sharing = self.sharing, False
        return was_sharing

    async def get_stats(self):
        return {'connection_state': 'connected'}

    def stop_local_tracks(self):
        self.tracks_stopped = True
        if self.local_stream is not None:
            self.local_stream.stop()

    async def teardown(self):
        self.stop_local_tracks()
        self.closed = True


class AdapterFactory:
    """Adapter factory that remembers what it built."""

    def __init__(self, media_error: Exception = None, media_delay: float = 0):
        self.media_error = media_error
        self.media_delay = media_delay
        self.built = []

    def __call__(self):
        adapter = FakeAdapter(media_error=self.media_error, media_delay=self.media_delay)
        self.built.append(adapter)
        return adapter

    @property
    def adapter(self) -> FakeAdapter:
        return self.built[-1]


@pytest.fixture
def relay():
    return InMemorySignalRelay()


@pytest.fixture
def sink():
    return MemoryCallRecordSink()


@pytest.fixture
async def make_controller(relay, sink):
    """Build controllers on the shared relay with fast retries."""
    built = []

    def factory(user_id, call_id=None, media_error=None, media_delay=0, **options):
        adapters = AdapterFactory(media_error=media_error, media_delay=media_delay)
        options.setdefault('publish_base_delay', 0.001)
        options.setdefault('record_sink', sink)
        controller = CallSessionController(user_id, relay, adapters, call_id=call_id, **options)
        controller.adapters = adapters
        controller.states = []
        controller.errors = []
        controller.on_state_change = lambda session: controller.states.append(session.status)
        controller.on_error = lambda kind, reason: controller.errors.append((kind, reason))
        built.append(controller)
        return controller

    yield factory

    for controller in built:
        controller.end_call('test teardown')
        await controller.wait_closed()


# ============================================================================
# Peer connection fakes (adapter tests)
# ============================================================================

class FakeSender:
    def __init__(self, track):
        self.track = track
        self.replaced = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakePeerConnection:
    """Just enough of RTCPeerConnection for PeerConnectionAdapter."""

    def __init__(self, configuration=None):
        self.configuration = configuration
        self.handlers = {}
        self.senders = []
        self.remote_descriptions = []
        self.candidates = []
        self.localDescription = None
        self.connectionState = 'new'
        self.iceConnectionState = 'new'
        self.iceGatheringState = 'new'
        self.signalingState = 'stable'
        self.close_calls = 0

    def on(self, event, handler):
        self.handlers[event] = handler
        return handler

    def emit(self, event, *args):
        self.handlers[event](*args)

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def createOffer(self):
        return RTCSessionDescription(sdp=VIDEO_SDP, type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp=AUDIO_SDP, type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = RTCSessionDescription(
            sdp=description.sdp + "a=candidate:1 1 udp 1 10.0.0.1 9 typ host\r\n",
            type=description.type,
        )

    async def setRemoteDescription(self, description):
        self.remote_descriptions.append(description)

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def getStats(self):
        return {
            'a': SimpleNamespace(type='outbound-rtp'),
            'b': SimpleNamespace(type='outbound-rtp'),
            'c': SimpleNamespace(type='transport'),
        }

    def getSenders(self):
        return list(self.senders)

    def getReceivers(self):
        return []

    async def close(self):
        self.close_calls += 1
        self.connectionState = 'closed'


@pytest.fixture
def fake_pc_factory():
    created = []

    def factory(configuration):
        pc = FakePeerConnection(configuration)
        created.append(pc)
        return pc

    factory.created = created
    return factory


class DeniedMediaSource:
    async def get_user_media(self, audio=True, video=False):
        raise MediaAccessDenied("Permission denied")

    async def get_display_media(self):
        raise MediaAccessDenied("Screen capture refused")
