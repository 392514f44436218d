"""
Frame Export Pipeline Package
Session lifecycle and the host-facing entry points
"""

from .session import ExportSession
from .pipeline import (
    AudioSaveResult,
    ExportPipeline,
    ExportResult,
    FrameSaveResult,
    InitResult,
)

__all__ = [
    'ExportSession',
    'ExportPipeline',
    'ExportResult',
    'InitResult',
    'FrameSaveResult',
    'AudioSaveResult',
]
