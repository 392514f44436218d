"""
FFmpeg Wrapper - Python interface to the external FFmpeg encoder

This module handles:
- Locating a working FFmpeg executable
- Encode and faststart-remux command construction
- Running FFmpeg asynchronously while draining its output streams
- Output inspection through FFprobe
"""

import os
import json
import codecs
import shutil
import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from dataclasses import dataclass
from enum import Enum

from .progress import DiagnosticTail, LineSplitter

logger = logging.getLogger(__name__)


class VideoCodec(Enum):
    """Supported video codecs"""
    H264 = "libx264"
    PRORES = "prores_ks"


class AudioCodec(Enum):
    """Supported audio codecs"""
    AAC = "aac"
    NONE = None


class PixelFormat(Enum):
    """Pixel formats used by the export profiles"""
    YUV420P = "yuv420p"          # Most compatible
    YUV422P10LE = "yuv422p10le"  # 10-bit 4:2:2 for ProRes


class OutputFormat(Enum):
    """Export modes offered to the host"""
    H264 = "h264"      # Compatibility mode: compressed MP4, faststart remux
    PRORES = "prores"  # Production-codec mode: ProRes 422 HQ in QuickTime

    @property
    def extension(self) -> str:
        return "mov" if self is OutputFormat.PRORES else "mp4"

    @property
    def needs_remux(self) -> bool:
        return self is OutputFormat.H264

    @property
    def dialog_filter(self) -> Dict[str, Any]:
        if self is OutputFormat.PRORES:
            return {'name': 'QuickTime Movie', 'extensions': ['mov']}
        return {'name': 'MP4 Video', 'extensions': ['mp4']}

    @classmethod
    def from_value(cls, value: Union[str, "OutputFormat", None]) -> "OutputFormat":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning(f"Unknown output format '{value}', using 'h264'")
            return cls.H264


@dataclass
class EncodingSettings:
    """Video and audio encoding settings for one export mode"""
    codec: VideoCodec = VideoCodec.H264
    crf: Optional[int] = 18
    preset: Optional[str] = "fast"
    pixel_format: PixelFormat = PixelFormat.YUV420P
    profile: Optional[str] = None
    level: Optional[str] = None
    vendor: Optional[str] = None

    # Audio settings (applied only when an audio input is present)
    audio_codec: AudioCodec = AudioCodec.AAC
    audio_bitrate: str = "192k"
    audio_sample_rate: int = 48000
    audio_channels: int = 2


OUTPUT_PRESETS = {
    # ProRes 422 HQ for professional editing
    OutputFormat.PRORES: EncodingSettings(
        codec=VideoCodec.PRORES,
        crf=None,
        preset=None,
        pixel_format=PixelFormat.YUV422P10LE,
        profile='3',
        vendor='apl0',
    ),
    # H.264 for universal playback; faststart is applied by the remux pass
    OutputFormat.H264: EncodingSettings(
        codec=VideoCodec.H264,
        crf=18,
        preset='fast',
        pixel_format=PixelFormat.YUV420P,
        profile='high',
        level='4.1',
    ),
}


class EncoderLocator:
    """
    Find a working FFmpeg executable.

    Candidates are probed in order with ``-version``; the first one that
    exits cleanly within the timeout is used.
    """

    DEFAULT_CANDIDATES = [
        '/opt/homebrew/bin/ffmpeg',  # Homebrew on Apple Silicon
        '/usr/local/bin/ffmpeg',     # Homebrew on Intel Macs
        '/usr/bin/ffmpeg',           # System install
        'ffmpeg',                    # In PATH
    ]

    def __init__(self, candidates: Optional[Sequence[str]] = None, timeout: float = 5.0):
        self.candidates = list(self.DEFAULT_CANDIDATES if candidates is None else candidates)
        self.timeout = timeout

    def probe_candidate(self, path: str) -> bool:
        """Run a harmless version check against one candidate"""
        try:
            result = subprocess.run(
                [path, '-version'],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"FFmpeg candidate {path} unusable: {e}")
            return False
        return result.returncode == 0

    def locate(self) -> Optional[str]:
        """Return the first usable candidate, or None"""
        for path in self.candidates:
            if self.probe_candidate(path):
                logger.info(f"Found FFmpeg at: {path}")
                return path

        logger.error("FFmpeg not found in any standard location")
        return None

    @staticmethod
    def locate_probe(ffmpeg_path: Optional[str]) -> Optional[str]:
        """Find the FFprobe executable that ships next to FFmpeg"""
        if ffmpeg_path:
            # Only replace the executable name, not directory components
            dirpath = os.path.dirname(ffmpeg_path)
            basename = os.path.basename(ffmpeg_path).replace('ffmpeg', 'ffprobe')
            ffprobe_path = os.path.join(dirpath, basename) if dirpath else basename
            if os.path.isfile(ffprobe_path):
                return ffprobe_path
            if shutil.which(ffprobe_path):
                return shutil.which(ffprobe_path)

        return shutil.which('ffprobe') or shutil.which('ffprobe.exe')


@dataclass
class ProcessOutcome:
    """Exit status and trailing diagnostics of one FFmpeg run"""
    returncode: Optional[int]
    diagnostics: str


class EncoderProcess:
    """
    One FFmpeg invocation.

    Both stdout and stderr are drained by separate tasks for the whole
    lifetime of the process, so a full pipe can never block the encoder.
    Every complete stderr line is passed to ``on_line``.
    """

    CHUNK_SIZE = 4096

    def __init__(
        self,
        cmd: List[str],
        on_line: Optional[Callable[[str], None]] = None,
        tail_chars: int = 500
    ):
        self.cmd = cmd
        self.on_line = on_line
        self.tail = DiagnosticTail(tail_chars)
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    async def start(self):
        """Spawn the process. Raises OSError when it cannot be started."""
        self._process = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        logger.debug(f"FFmpeg started (pid {self._process.pid})")

    async def _drain_stdout(self):
        while True:
            chunk = await self._process.stdout.read(self.CHUNK_SIZE)
            if not chunk:
                break

    async def _drain_stderr(self):
        splitter = LineSplitter()
        # Chunks can split a multi-byte character
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        while True:
            chunk = await self._process.stderr.read(self.CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self.tail.append(text)
                for line in splitter.feed(text):
                    self._handle_line(line)
            if not chunk:
                break
        for line in splitter.flush():
            self._handle_line(line)

    def _handle_line(self, line: str):
        logger.debug(f"FFmpeg: {line.strip()}")
        if self.on_line:
            self.on_line(line)

    async def wait(self) -> ProcessOutcome:
        """Drain both streams until EOF and wait for exit"""
        await asyncio.gather(self._drain_stdout(), self._drain_stderr())
        returncode = await self._process.wait()
        logger.info(f"FFmpeg exited with code {returncode}")
        return ProcessOutcome(returncode=returncode, diagnostics=self.tail.tail())

    def terminate(self):
        """Send the standard termination signal if still running"""
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    def kill(self):
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def stop(self, grace_seconds: float = 10.0):
        """Terminate, then kill if the process outlives the grace period"""
        if self._process is None or self._process.returncode is not None:
            return
        logger.info(f"Terminating FFmpeg (pid {self._process.pid})")
        self.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"FFmpeg ignored termination, killing pid {self._process.pid}")
            self.kill()
            await self._process.wait()

    async def run(self) -> ProcessOutcome:
        await self.start()
        return await self.wait()


class FFmpegWrapper:
    """
    Command construction and execution around one FFmpeg executable.
    """

    def __init__(self, ffmpeg_path: str, tail_chars: int = 500):
        """
        Initialize FFmpeg wrapper.

        Args:
            ffmpeg_path: Path of a verified FFmpeg executable
            tail_chars: Diagnostic characters kept for error messages
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = EncoderLocator.locate_probe(ffmpeg_path)
        self.tail_chars = tail_chars

    def build_encode_command(
        self,
        frame_pattern: str,
        output_path: str,
        fps: float,
        output_format: OutputFormat = OutputFormat.H264,
        audio_path: Optional[str] = None,
        settings: Optional[EncodingSettings] = None
    ) -> List[str]:
        """
        Build the primary encode command.

        Args:
            frame_pattern: Numbered image pattern (e.g. "frame_%06d.png")
            output_path: Temporary output file
            fps: Input frame rate
            output_format: Export mode selecting the codec profile
            audio_path: Optional audio input, re-encoded to AAC
            settings: Override the mode's preset

        Returns:
            List of command arguments
        """
        if settings is None:
            settings = OUTPUT_PRESETS[output_format]

        cmd = [self.ffmpeg_path, '-y']

        # Frame rate for input (important for image sequences)
        cmd.extend(['-framerate', _format_fps(fps)])
        cmd.extend(['-i', frame_pattern])

        if audio_path:
            cmd.extend(['-i', audio_path])

        # Video codec settings
        cmd.extend(['-c:v', settings.codec.value])
        if settings.crf is not None:
            cmd.extend(['-crf', str(settings.crf)])
        if settings.preset:
            cmd.extend(['-preset', settings.preset])
        cmd.extend(['-pix_fmt', settings.pixel_format.value])

        # Profile and level
        if settings.profile:
            cmd.extend(['-profile:v', settings.profile])
        if settings.level:
            cmd.extend(['-level', settings.level])
        if settings.vendor:
            cmd.extend(['-vendor', settings.vendor])

        # Audio settings
        if audio_path and settings.audio_codec != AudioCodec.NONE:
            cmd.extend([
                '-c:a', settings.audio_codec.value,
                '-b:a', settings.audio_bitrate,
                '-ar', str(settings.audio_sample_rate),
                '-ac', str(settings.audio_channels),
                '-shortest',  # Match shorter of video/audio
            ])
        else:
            cmd.append('-an')  # Video-only output

        cmd.append(output_path)
        return cmd

    def build_faststart_command(self, input_path: str, output_path: str) -> List[str]:
        """Stream-copy remux that moves the MOOV atom to the front"""
        return [
            self.ffmpeg_path, '-y',
            '-i', input_path,
            '-c', 'copy',
            '-movflags', '+faststart',
            output_path
        ]

    def create_process(
        self,
        cmd: List[str],
        on_line: Optional[Callable[[str], None]] = None
    ) -> EncoderProcess:
        logger.info(f"FFmpeg command: {' '.join(cmd)}")
        return EncoderProcess(cmd, on_line=on_line, tail_chars=self.tail_chars)

    def get_video_info(self, video_path: str) -> Optional[Dict[str, Any]]:
        """
        Get video information using FFprobe.

        Args:
            video_path: Path to video file

        Returns:
            Dictionary with FFprobe format and stream information
        """
        if not self.ffprobe_path:
            logger.warning("FFprobe not available")
            return None

        cmd = [
            self.ffprobe_path,
            '-v', 'quiet',
            '-print_format', 'json',
            '-show_format',
            '-show_streams',
            video_path
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to get video info: {e}")
            return None

        if result.returncode != 0:
            logger.error(f"FFprobe failed for {video_path}: {result.stderr.strip()}")
            return None
        return json.loads(result.stdout)


def _format_fps(fps: float) -> str:
    """Render 30.0 as "30" so FFmpeg sees an integer rate where possible"""
    fps = float(fps)
    return str(int(fps)) if fps.is_integer() else str(fps)


def file_size_mb(path: Union[str, Path]) -> float:
    return Path(path).stat().st_size / 1024 / 1024
