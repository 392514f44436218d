"""
Frame Export Video Package
Handles the frame workspace and FFmpeg encoding
"""

from .frame_writer import FrameStore, decode_payload
from .ffmpeg_wrapper import EncoderLocator, FFmpegWrapper, OutputFormat
from .assembler import ExportOrchestrator, ExportRequest, ExportState, SaveDialogOptions
from .progress import ProgressEvent

__all__ = [
    'FrameStore',
    'decode_payload',
    'EncoderLocator',
    'FFmpegWrapper',
    'OutputFormat',
    'ExportOrchestrator',
    'ExportRequest',
    'ExportState',
    'SaveDialogOptions',
    'ProgressEvent',
]
