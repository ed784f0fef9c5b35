"""
Local media acquisition.

Camera/microphone/display capture behind a small MediaSource interface so the
controller never cares where frames come from:
- DeviceMediaSource: real devices via aiortc's MediaPlayer (FFmpeg/PyAV)
- SyntheticMediaSource: silence + test pattern, for loopback and headless runs

Local tracks are wrapped in LocalMediaTrack, which adds the browser-style
``enabled`` switch used for mute / video-off without renegotiation.
"""

import logging
import platform
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from .errors import MediaAccessDenied


def blank_frame(frame):
    """
    Return a silent (audio) or black (video) frame with the timing of ``frame``.
    """
    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format='yuv420p')
        luma, *chroma = blank.planes
        luma.update(bytes(luma.buffer_size))
        for plane in chroma:
            plane.update(b'\x80' * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class LocalMediaTrack(MediaStreamTrack):
    """
    Outgoing track with an ``enabled`` switch.

    While disabled the track keeps its timing but sends silence / black
    frames, so the remote side sees a muted track instead of a stalled one.
    Stopping the wrapper stops the capture source (releases the device).
    """

    def __init__(self, source: MediaStreamTrack, label: str = ''):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.label = label or source.kind
        self.enabled = True
        # Capture ended on its own (device unplugged, screen capture stopped)
        source.on('ended', self.stop)

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self):
        if self.readyState == 'ended':
            return
        super().stop()
        self.source.stop()

    def __repr__(self):
        return f"LocalMediaTrack(kind={self.kind!r}, label={self.label!r}, enabled={self.enabled}, state={self.readyState})"


@dataclass
class LocalStream:
    """Handle on the local capture tracks of one call."""

    audio: Optional[LocalMediaTrack] = None
    video: Optional[LocalMediaTrack] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def tracks(self) -> List[LocalMediaTrack]:
        return [track for track in (self.audio, self.video) if track is not None]

    def stop(self):
        """Stop every track (idempotent)."""
        for track in self.tracks():
            track.stop()


class MediaSource:
    """
    Interface for local capture.

    Implementations raise MediaAccessDenied when the user or the OS refuses
    access; the error must reach the controller.
    """

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalStream:
        raise NotImplementedError

    async def get_display_media(self) -> LocalMediaTrack:
        raise NotImplementedError


class DeviceMediaSource(MediaSource):
    """
    Capture from platform devices through aiortc's MediaPlayer.

    Device names come from call settings; empty strings mean system default.
    """

    # (format, default device) per platform and media kind
    PLATFORM_DEVICES: Dict[str, Dict[str, tuple]] = {
        'Linux': {
            'audio': ('pulse', 'default'),
            'video': ('v4l2', '/dev/video0'),
            'display': ('x11grab', ':0.0'),
        },
        'Darwin': {
            'audio': ('avfoundation', 'none:default'),
            'video': ('avfoundation', 'default:none'),
            'display': ('avfoundation', 'Capture screen 0:none'),
        },
        'Windows': {
            'audio': ('dshow', 'audio=default'),
            'video': ('dshow', 'video=Integrated Camera'),
            'display': ('gdigrab', 'desktop'),
        },
    }

    def __init__(self, microphone_device: str = '', camera_device: str = '',
                 display_device: str = '', video_size: str = '640x480', framerate: int = 30,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            microphone_device: Microphone device name (empty = default)
            camera_device: Camera device name (empty = default)
            display_device: Display capture input (empty = default screen)
            video_size: Capture size for camera and screen
            framerate: Capture frame rate
            logger: Logger instance
        """
        self.system = platform.system()
        self.microphone_device = microphone_device
        self.camera_device = camera_device
        self.display_device = display_device
        self.video_size = video_size
        self.framerate = framerate
        self.logger = logger or logging.getLogger(__name__)

    def _open(self, kind: str, device: str) -> MediaPlayer:
        devices = self.PLATFORM_DEVICES.get(self.system)
        if devices is None:
            raise MediaAccessDenied(f"No {kind} capture support on {self.system}")

        fmt, default_device = devices[kind]
        options = {}
        if kind in ('video', 'display'):
            options = {'video_size': self.video_size, 'framerate': str(self.framerate)}

        target = device or default_device
        self.logger.debug(f"Opening {kind} capture: format={fmt}, device={target}")
        try:
            return MediaPlayer(target, format=fmt, options=options)
        except (FFmpegError, OSError) as e:
            self.logger.warning(f"{kind} capture refused ({fmt}:{target}): {e}")
            raise MediaAccessDenied(f"Cannot open {kind} device {target!r}: {e}")

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalStream:
        stream = LocalStream()
        try:
            if audio:
                player = self._open('audio', self.microphone_device)
                if player.audio is None:
                    raise MediaAccessDenied(f"Microphone {self.microphone_device or 'default'} has no audio")
                stream.audio = LocalMediaTrack(player.audio, label='microphone')
            if video:
                player = self._open('video', self.camera_device)
                if player.video is None:
                    raise MediaAccessDenied(f"Camera {self.camera_device or 'default'} has no video")
                stream.video = LocalMediaTrack(player.video, label='camera')
        except MediaAccessDenied:
            # Release whatever was opened before the failure
            stream.stop()
            raise

        self.logger.info(f"Local media acquired: audio={stream.audio is not None}, video={stream.video is not None}")
        return stream

    async def get_display_media(self) -> LocalMediaTrack:
        player = self._open('display', self.display_device)
        if player.video is None:
            raise MediaAccessDenied("Display capture produced no video")
        self.logger.info("Display capture started")
        return LocalMediaTrack(player.video, label='screen')


class SyntheticMediaSource(MediaSource):
    """Silence and a test pattern, never touches real devices."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def get_user_media(self, audio: bool = True, video: bool = False) -> LocalStream:
        stream = LocalStream(
            audio=LocalMediaTrack(AudioStreamTrack(), label='synthetic-audio') if audio else None,
            video=LocalMediaTrack(VideoStreamTrack(), label='synthetic-camera') if video else None,
        )
        self.logger.debug(f"Synthetic media created: audio={audio}, video={video}")
        return stream

    async def get_display_media(self) -> LocalMediaTrack:
        return LocalMediaTrack(VideoStreamTrack(), label='synthetic-screen')
