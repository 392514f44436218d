"""
Export Pipeline - Entry points for the host application

This module handles:
- Session lifecycle (init, finalize, cancel)
- Frame batch and audio persistence
- Progress fan-out to listeners
- Converting every failure into a structured result

Usage:
    pipeline = ExportPipeline()

    await pipeline.init(width=640, height=480, fps=30)
    await pipeline.save_frame_batch(data_urls)
    result = await pipeline.finalize(
        ExportRequest(fps=30, output_format='h264', output_path='out.mp4')
    )
    print(result.to_dict())
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union
from dataclasses import dataclass

from ..config import ExportConfig, load_config
from ..errors import (
    ErrorType,
    ExportCanceledError,
    ExportError,
    NotInitializedError,
    SessionBusyError,
)
from ..video.assembler import DestinationChooser, ExportOrchestrator, ExportOutput, ExportRequest, ExportState
from ..video.ffmpeg_wrapper import EncoderLocator
from ..video.frame_writer import FramePayload, FrameStore
from ..video.progress import ProgressEvent
from .session import ExportSession

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], Any]


@dataclass
class _Result:
    error: Optional[str] = None
    error_type: Optional[ErrorType] = None

    @classmethod
    def from_error(cls, exc: BaseException):
        error_type = exc.error_type if isinstance(exc, ExportError) else ErrorType.UNKNOWN
        return cls(error=str(exc), error_type=error_type)

    @property
    def ok(self) -> bool:
        return self.error is None

    def _error_dict(self) -> Dict[str, Any]:
        error_type = self.error_type or ErrorType.UNKNOWN
        return {'error': self.error, 'error_type': error_type.value}


@dataclass
class InitResult(_Result):
    workspace_path: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return self._error_dict()
        return {'workspace_path': self.workspace_path, 'session_id': self.session_id}


@dataclass
class FrameSaveResult(_Result):
    frame_number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return self._error_dict()
        return {'frame_number': self.frame_number}


@dataclass
class AudioSaveResult(_Result):
    audio_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return self._error_dict()
        return {'audio_path': self.audio_path}


@dataclass
class ExportResult(_Result):
    """Terminal outcome of finalize or cancel"""
    success: bool = False
    canceled: bool = False
    output_path: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def succeeded(cls, output: ExportOutput) -> "ExportResult":
        return cls(success=True, output_path=str(output.output_path), file_size=output.file_size)

    @classmethod
    def cancelled(cls) -> "ExportResult":
        return cls(canceled=True)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {'success': True, 'output_path': self.output_path, 'file_size': self.file_size}
        if self.canceled:
            return {'canceled': True}
        return self._error_dict()


class ExportPipeline:
    """
    Single-session export pipeline.

    At most one session is open at a time. Every terminal transition
    (finalize success or failure, cancel) removes the session workspace
    exactly once.
    """

    def __init__(
        self,
        config: Optional[ExportConfig] = None,
        locator: Optional[EncoderLocator] = None,
        chooser: Optional[DestinationChooser] = None
    ):
        """
        Initialize the pipeline.

        Args:
            config: Export configuration (default: packaged defaults)
            locator: Encoder locator (default: built from config candidates)
            chooser: Destination chooser used when a request has no output path
        """
        self.config = config or load_config()
        self.locator = locator or EncoderLocator(
            self.config.encoder_candidates,
            timeout=self.config.probe_timeout_seconds
        )
        self.chooser = chooser
        self.orchestrator = ExportOrchestrator(
            locator=self.locator,
            tail_chars=self.config.diagnostic_tail_chars,
            default_output_name=self.config.default_output_name,
            cancel_grace_seconds=self.config.cancel_grace_seconds
        )

        self._session: Optional[ExportSession] = None
        self._write_lock = asyncio.Lock()
        self._listeners: List[ProgressListener] = []
        self._listener_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[ExportSession]:
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session is not None

    @property
    def state(self) -> ExportState:
        return self.orchestrator.state

    def status(self) -> Dict[str, Any]:
        status = {'active': self.is_active, 'state': self.state.value}
        if self._session is not None:
            status.update(self._session.to_dict())
        return status

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def add_progress_listener(self, listener: ProgressListener):
        """Register a callback (plain or async) for ProgressEvents"""
        self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish_progress(self, event: ProgressEvent):
        # Called from the encoder drain loop: schedule, never run inline
        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            if inspect.iscoroutinefunction(listener):
                task = loop.create_task(listener(event))
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)
            else:
                loop.call_soon(self._call_listener, listener, event)

    def _call_listener(self, listener: ProgressListener, event: ProgressEvent):
        try:
            listener(event)
        except Exception as e:
            logger.warning(f"Progress listener failed: {e}")

    def _listener_done(self, task: asyncio.Task):
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Progress listener failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _create_store(self) -> FrameStore:
        return FrameStore.create(
            scratch_dir=self.config.scratch_dir,
            workspace_prefix=self.config.workspace_prefix,
            prefix=self.config.frame_prefix,
            zero_pad=self.config.frame_digits,
            extension=self.config.frame_extension,
            audio_filename=self.config.audio_filename,
            temp_output_stem=self.config.temp_output_stem,
        )

    async def init(self, width: int, height: int, fps: float) -> InitResult:
        """
        Open a new session with a fresh workspace.

        An idle session left open by the host is discarded first. A session
        that is currently being finalized blocks a new one.
        """
        current = self._session
        if current is not None:
            if current.finalizing:
                return InitResult.from_error(SessionBusyError())
            logger.warning(f"Discarding unfinished export session {current.id}")
            self._cleanup(current)

        try:
            store = await asyncio.to_thread(self._create_store)
        except OSError as e:
            logger.error(f"Could not create export workspace: {e}")
            return InitResult.from_error(e)

        session = ExportSession(store=store, width=width, height=height, fps=fps)
        self._session = session
        logger.info(f"Export initialized: {store.workspace}, {width}x{height} @ {fps}fps")
        return InitResult(workspace_path=str(store.workspace), session_id=session.id)

    def _writable_session(self) -> ExportSession:
        session = self._session
        if session is None:
            raise NotInitializedError()
        if session.finalizing:
            raise SessionBusyError()
        return session

    async def save_frame_batch(self, frames: Sequence[FramePayload]) -> FrameSaveResult:
        """Persist a batch of frames concurrently, continuing the sequence"""
        try:
            async with self._write_lock:
                session = self._writable_session()
                frames = list(frames)
                await session.store.write_batch(frames, session.frame_count)
                if session.closed:
                    raise NotInitializedError()
                session.frame_count += len(frames)
                return FrameSaveResult(frame_number=session.frame_count)
        except ExportError as e:
            logger.error(f"Frame batch failed: {e}")
            return FrameSaveResult.from_error(e)
        except Exception as e:
            logger.exception("Unexpected frame batch failure")
            return FrameSaveResult.from_error(e)

    async def save_frame(self, payload: FramePayload) -> FrameSaveResult:
        """Persist a single frame (legacy form of save_frame_batch)"""
        try:
            async with self._write_lock:
                session = self._writable_session()
                await session.store.write_frame(payload, session.frame_count)
                if session.closed:
                    raise NotInitializedError()
                session.frame_count += 1
                return FrameSaveResult(frame_number=session.frame_count)
        except ExportError as e:
            logger.error(f"Frame save failed: {e}")
            return FrameSaveResult.from_error(e)
        except Exception as e:
            logger.exception("Unexpected frame save failure")
            return FrameSaveResult.from_error(e)

    async def save_audio(self, data: Union[bytes, bytearray, memoryview]) -> AudioSaveResult:
        """Persist the session's audio track, replacing any earlier one"""
        try:
            session = self._writable_session()
            path = await session.store.write_audio(data)
        except ExportError as e:
            return AudioSaveResult.from_error(e)
        except OSError as e:
            logger.error(f"Audio save failed: {e}")
            return AudioSaveResult.from_error(e)
        except Exception as e:
            logger.exception("Unexpected audio save failure")
            return AudioSaveResult.from_error(e)
        return AudioSaveResult(audio_path=str(path))

    @asynccontextmanager
    async def _finalizing(self, session: ExportSession):
        session.finalizing = True
        session.finished = asyncio.Event()
        try:
            yield session
        finally:
            session.finalizing = False
            self._cleanup(session)
            session.finished.set()

    async def finalize(
        self,
        request: ExportRequest,
        chooser: Optional[DestinationChooser] = None
    ) -> ExportResult:
        """
        Encode the session into a video file and close the session.

        Args:
            request: Frame rate, audio flag, output mode and optional path
            chooser: Overrides the pipeline's destination chooser

        Returns:
            ExportResult (success, error or canceled); never raises for
            export failures
        """
        session = self._session
        if session is None:
            return ExportResult.from_error(NotInitializedError())
        if session.finalizing:
            return ExportResult.from_error(SessionBusyError())

        try:
            async with self._finalizing(session):
                output = await self.orchestrator.run(
                    session.store,
                    request,
                    chooser=chooser or self.chooser,
                    is_cancelled=lambda: session.cancel_requested,
                    on_progress=self._publish_progress
                )
        except ExportCanceledError as e:
            logger.info(f"{e}")
            return ExportResult.cancelled()
        except ExportError as e:
            logger.error(f"Export failed: {e}")
            return ExportResult.from_error(e)
        except Exception as e:
            logger.exception("Unexpected export failure")
            return ExportResult.from_error(e)

        return ExportResult.succeeded(output)

    async def cancel(self) -> ExportResult:
        """
        Abandon the session.

        A running encoder is terminated and the in-flight finalize is
        awaited; it removes the workspace on its way out.
        """
        session = self._session
        if session is None:
            return ExportResult.cancelled()

        session.cancel_requested = True
        if session.finalizing:
            await self.orchestrator.stop()
            await session.finished.wait()
        else:
            self._cleanup(session)

        logger.info("Export canceled")
        return ExportResult.cancelled()

    def _cleanup(self, session: ExportSession):
        """Remove the session workspace and deactivate it; safe to repeat"""
        if self._session is session:
            self._session = None
        if session.closed:
            return
        session.closed = True
        session.store.destroy()
