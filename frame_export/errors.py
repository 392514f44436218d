"""
Export Errors

Every failure the export pipeline can report. Lower layers raise these;
ExportPipeline converts them into structured results at its boundary.
"""

from enum import Enum


class ErrorType(Enum):
    """Classification of export failures"""
    NOT_INITIALIZED = "not_initialized"
    SESSION_BUSY = "session_busy"
    NO_FRAMES_RENDERED = "no_frames_rendered"
    ENCODER_NOT_FOUND = "encoder_not_found"
    SPAWN_FAILURE = "spawn_failure"
    ENCODE_FAILURE = "encode_failure"
    REMUX_FAILURE = "remux_failure"
    FRAME_WRITE = "frame_write"
    USER_CANCELED = "user_canceled"
    UNKNOWN = "unknown"


FFMPEG_INSTALL_GUIDANCE = (
    "FFmpeg not found. Please install FFmpeg:\n\n"
    "brew install ffmpeg\n\n"
    "or on Linux:\n\n"
    "sudo apt install ffmpeg\n\n"
    "or download from https://ffmpeg.org"
)


class ExportError(Exception):
    """Base class for export pipeline failures"""
    error_type = ErrorType.UNKNOWN
    default_message = "Export failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotInitializedError(ExportError):
    error_type = ErrorType.NOT_INITIALIZED
    default_message = "Export not initialized"


class SessionBusyError(ExportError):
    error_type = ErrorType.SESSION_BUSY
    default_message = "An export is already being finalized"


class NoFramesRenderedError(ExportError):
    error_type = ErrorType.NO_FRAMES_RENDERED
    default_message = "No frames were rendered. Export failed."


class EncoderNotFoundError(ExportError):
    error_type = ErrorType.ENCODER_NOT_FOUND
    default_message = FFMPEG_INSTALL_GUIDANCE


class SpawnFailureError(ExportError):
    error_type = ErrorType.SPAWN_FAILURE


class EncodeFailureError(ExportError):
    error_type = ErrorType.ENCODE_FAILURE

    def __init__(self, returncode: int = None, details: str = ""):
        self.returncode = returncode
        self.details = details
        super().__init__(f"FFmpeg failed (code {returncode}).\n\nDetails:\n{details}")


class RemuxFailureError(ExportError):
    error_type = ErrorType.REMUX_FAILURE

    def __init__(self, returncode: int = None, details: str = ""):
        self.returncode = returncode
        self.details = details
        super().__init__(f"Faststart failed (code {returncode})")


class FrameWriteError(ExportError):
    error_type = ErrorType.FRAME_WRITE


class ExportCanceledError(ExportError):
    error_type = ErrorType.USER_CANCELED
    default_message = "Export canceled"
