"""
Video Assembler - Turns a frame workspace into the final video file

This module handles:
- Export validation (frames, destination, encoder)
- The primary encode from the numbered frame sequence
- The faststart remux for MP4 output
- Atomic placement of the result at the destination
- Stopping the running encoder on cancellation
"""

import os
import shutil
import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from dataclasses import dataclass, field
from enum import Enum

from ..errors import (
    EncodeFailureError,
    EncoderNotFoundError,
    ExportCanceledError,
    NoFramesRenderedError,
    RemuxFailureError,
    SpawnFailureError,
)
from .ffmpeg_wrapper import EncoderLocator, EncoderProcess, FFmpegWrapper, OutputFormat, file_size_mb
from .frame_writer import FrameStore
from .progress import ProgressEvent, ProgressTracker

logger = logging.getLogger(__name__)


class ExportState(Enum):
    """Orchestrator lifecycle"""
    IDLE = "idle"
    VALIDATING = "validating"
    ENCODING = "encoding"
    REMUXING = "remuxing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SaveDialogOptions:
    """What a save dialog needs to ask the user for a destination"""
    title: str
    default_path: str
    filters: List[Dict[str, Any]] = field(default_factory=list)


# Returns the chosen path, or None when the user cancels
DestinationChooser = Callable[[SaveDialogOptions], Union[Optional[str], Awaitable[Optional[str]]]]


@dataclass
class ExportRequest:
    """Parameters for one finalize call"""
    fps: float = 30
    has_audio: bool = False
    output_format: Union[OutputFormat, str] = OutputFormat.H264
    output_path: Optional[str] = None

    def __post_init__(self):
        self.output_format = OutputFormat.from_value(self.output_format)


@dataclass
class ExportOutput:
    """A finished export"""
    output_path: Path
    file_size: int
    frames: int
    output_format: OutputFormat


def atomic_move(src: Path, dst: Path):
    """
    Move ``src`` to ``dst`` so that ``dst`` is either untouched or complete.

    Across filesystems the data is first copied next to ``dst`` and then
    renamed into place.
    """
    try:
        os.replace(src, dst)
        return
    except OSError as e:
        logger.debug(f"Direct rename failed ({e}), copying across filesystems")

    partial = dst.with_name(f".{dst.name}.partial")
    try:
        shutil.copyfile(src, partial)
        os.replace(partial, dst)
    finally:
        if partial.exists():
            partial.unlink()
    src.unlink()


class ExportOrchestrator:
    """
    Runs the export state machine for one workspace:

        IDLE -> VALIDATING -> ENCODING -> (REMUXING) -> DONE | FAILED | CANCELLED

    The H.264 encode writes its index at the end of the file, which
    prevents progressive playback. A second stream-copy pass moves it to
    the front without re-encoding. ProRes output is moved into place
    directly.

    Only one encoder process runs at a time; ``stop()`` terminates it.
    """

    def __init__(
        self,
        locator: Optional[EncoderLocator] = None,
        tail_chars: int = 500,
        default_output_name: str = "frame_export",
        cancel_grace_seconds: float = 10.0
    ):
        self.locator = locator or EncoderLocator()
        self.tail_chars = tail_chars
        self.default_output_name = default_output_name
        self.cancel_grace_seconds = cancel_grace_seconds

        self._state = ExportState.IDLE
        self._active: Optional[EncoderProcess] = None
        self.invocations: List[List[str]] = []

    @property
    def state(self) -> ExportState:
        return self._state

    def _set_state(self, state: ExportState):
        if state != self._state:
            logger.debug(f"Export state: {self._state.value} -> {state.value}")
        self._state = state

    def dialog_options(self, output_format: OutputFormat) -> SaveDialogOptions:
        return SaveDialogOptions(
            title="Save Exported Video",
            default_path=f"{self.default_output_name}.{output_format.extension}",
            filters=[output_format.dialog_filter]
        )

    async def _resolve_destination(
        self,
        request: ExportRequest,
        chooser: Optional[DestinationChooser]
    ) -> Optional[Path]:
        if request.output_path:
            return Path(request.output_path).expanduser()
        if chooser is None:
            return None

        chosen = chooser(self.dialog_options(request.output_format))
        if inspect.isawaitable(chosen):
            chosen = await chosen
        return Path(chosen).expanduser() if chosen else None

    async def run(
        self,
        store: FrameStore,
        request: ExportRequest,
        chooser: Optional[DestinationChooser] = None,
        is_cancelled: Callable[[], bool] = lambda: False,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None
    ) -> ExportOutput:
        """
        Export the workspace to the requested destination.

        Args:
            store: Workspace holding the numbered frames and optional audio
            request: Frame rate, audio flag, output mode and destination
            chooser: Asked for a destination when the request has none
            is_cancelled: Polled between stages
            on_progress: Receives each new ProgressEvent during encoding

        Returns:
            ExportOutput describing the written file

        Raises:
            ExportError subclasses for every failure and cancellation
        """
        self._set_state(ExportState.VALIDATING)
        self.invocations = []
        try:
            total = store.count_frames()
            logger.info(f"Found {total} frames in {store.workspace}")
            if total == 0:
                raise NoFramesRenderedError()

            destination = await self._resolve_destination(request, chooser)
            if destination is None:
                raise ExportCanceledError("Export canceled: no destination chosen")
            self._check_cancelled(is_cancelled)

            ffmpeg_path = await asyncio.to_thread(self.locator.locate)
            if not ffmpeg_path:
                raise EncoderNotFoundError()
            ffmpeg = FFmpegWrapper(ffmpeg_path, tail_chars=self.tail_chars)

            destination.parent.mkdir(parents=True, exist_ok=True)

            temp_output = await self._encode(ffmpeg, store, request, total, is_cancelled, on_progress)

            if request.output_format.needs_remux:
                await self._remux(ffmpeg, temp_output, destination, is_cancelled)
            else:
                self._check_cancelled(is_cancelled)
                atomic_move(temp_output, destination)

            file_size = destination.stat().st_size
            logger.info(f"Final output: {destination}, size: {file_size_mb(destination):.2f} MB")
            self._set_state(ExportState.DONE)
            return ExportOutput(
                output_path=destination,
                file_size=file_size,
                frames=total,
                output_format=request.output_format
            )

        except ExportCanceledError:
            self._set_state(ExportState.CANCELLED)
            raise
        except BaseException:
            self._set_state(ExportState.FAILED)
            raise

    def _check_cancelled(self, is_cancelled: Callable[[], bool]):
        if is_cancelled():
            raise ExportCanceledError()

    async def _run_process(
        self,
        ffmpeg: FFmpegWrapper,
        cmd: List[str],
        is_cancelled: Callable[[], bool],
        on_line: Optional[Callable[[str], None]] = None
    ):
        self._check_cancelled(is_cancelled)
        process = ffmpeg.create_process(cmd, on_line=on_line)
        self.invocations.append(cmd)
        self._active = process
        try:
            try:
                await process.start()
            except OSError as e:
                logger.error(f"FFmpeg spawn error: {e}")
                raise SpawnFailureError(f"Failed to run FFmpeg: {e}") from e
            if is_cancelled():
                # Cancel arrived while the process was being spawned
                process.terminate()
            return await process.wait()
        finally:
            self._active = None

    async def _encode(
        self,
        ffmpeg: FFmpegWrapper,
        store: FrameStore,
        request: ExportRequest,
        total: int,
        is_cancelled: Callable[[], bool],
        on_progress: Optional[Callable[[ProgressEvent], None]]
    ) -> Path:
        self._set_state(ExportState.ENCODING)

        audio_path = None
        if request.has_audio and store.has_audio():
            audio_path = str(store.audio_path)
        elif request.has_audio:
            logger.warning("Audio requested but no audio file was saved; exporting video only")

        temp_output = store.temp_output_path(request.output_format.extension)
        cmd = ffmpeg.build_encode_command(
            frame_pattern=store.get_frame_pattern(),
            output_path=str(temp_output),
            fps=request.fps,
            output_format=request.output_format,
            audio_path=audio_path
        )

        logger.info(f"Processing {total} frames...")
        tracker = ProgressTracker(total, on_progress=on_progress)
        outcome = await self._run_process(ffmpeg, cmd, is_cancelled, on_line=tracker.feed_line)

        self._check_cancelled(is_cancelled)
        if outcome.returncode != 0 or not temp_output.exists():
            logger.error(f"FFmpeg error (code {outcome.returncode}): {outcome.diagnostics}")
            raise EncodeFailureError(outcome.returncode, outcome.diagnostics)

        logger.info(f"Temp output created: {file_size_mb(temp_output):.2f} MB")
        return temp_output

    async def _remux(
        self,
        ffmpeg: FFmpegWrapper,
        temp_output: Path,
        destination: Path,
        is_cancelled: Callable[[], bool]
    ):
        self._check_cancelled(is_cancelled)
        self._set_state(ExportState.REMUXING)
        logger.info("Applying faststart (moving moov atom)...")

        # Remux next to the destination so a failed pass never leaves a
        # truncated file under the user's chosen name
        partial = destination.with_name(f".{destination.stem}.partial{destination.suffix}")
        cmd = ffmpeg.build_faststart_command(str(temp_output), str(partial))
        try:
            outcome = await self._run_process(ffmpeg, cmd, is_cancelled)
        finally:
            temp_output.unlink(missing_ok=True)

        try:
            self._check_cancelled(is_cancelled)
            if outcome.returncode != 0 or not partial.exists():
                logger.error(f"Faststart failed: {outcome.diagnostics}")
                raise RemuxFailureError(outcome.returncode, outcome.diagnostics)
            os.replace(partial, destination)
        finally:
            partial.unlink(missing_ok=True)

    async def stop(self):
        """Terminate the running encoder process, if any"""
        process = self._active
        if process is not None:
            await process.stop(self.cancel_grace_seconds)
