"""
Export session state, owned by ExportPipeline.
"""

import time
import uuid
import asyncio
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field

from ..video.frame_writer import FrameStore


@dataclass
class ExportSession:
    """One open export: its workspace and how many frames it holds"""
    store: FrameStore
    width: int
    height: int
    fps: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    frame_count: int = 0
    created_at: float = field(default_factory=time.time)

    # Lifecycle
    finalizing: bool = False
    cancel_requested: bool = False
    closed: bool = False
    finished: Optional[asyncio.Event] = None

    @property
    def workspace(self) -> Path:
        return self.store.workspace

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.id,
            'workspace_path': str(self.workspace),
            'width': self.width,
            'height': self.height,
            'fps': self.fps,
            'frame_count': self.frame_count,
            'finalizing': self.finalizing,
            'cancel_requested': self.cancel_requested,
        }
