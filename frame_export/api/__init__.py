"""
Frame Export API Package
HTTP/WebSocket server over the export pipeline (requires the api extra)
"""

from .server import app, configure_pipeline, get_pipeline, run_server

__all__ = [
    'app',
    'configure_pipeline',
    'get_pipeline',
    'run_server',
]
