"""
Frame Export Main Package
Turns rendered frames (and optional audio) into a video file with FFmpeg
"""

__version__ = "0.1.0"
__author__ = "Frame Export Project"


# ── Lazy imports ---------------------------------------------------------
# Nothing heavy is imported at package level; the API server (FastAPI)
# lives in frame_export.api and is only loaded when imported directly.

__all__ = [
    'ExportPipeline',
    'ExportRequest',
    'ExportResult',
    'OutputFormat',
    'load_config',
]


def __getattr__(name):
    """Lazy attribute access for sub-module symbols."""
    _pipeline_names = {
        'ExportPipeline', 'ExportResult', 'InitResult', 'FrameSaveResult', 'AudioSaveResult',
    }
    if name in _pipeline_names:
        from . import pipeline as _pipeline
        return getattr(_pipeline, name)

    _video_names = {
        'ExportRequest', 'OutputFormat', 'FrameStore', 'EncoderLocator', 'ProgressEvent',
        'SaveDialogOptions', 'ExportState',
    }
    if name in _video_names:
        from . import video as _video
        return getattr(_video, name)

    if name in ('load_config', 'ExportConfig'):
        from . import config as _config
        return getattr(_config, name)

    raise AttributeError(f"module 'frame_export' has no attribute {name!r}")
