"""
Frame Export API Server

REST and WebSocket surface over ExportPipeline for hosts that render
frames in another process (browser, desktop shell, game engine).

Features:
- REST endpoints mirroring the pipeline entry points
- WebSocket channel pushing encoder progress and export results
- Health and status checks
"""

import time
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..config import ExportConfig, load_config
from ..pipeline import ExportPipeline
from ..video.assembler import ExportRequest, SaveDialogOptions
from ..video.progress import ProgressEvent

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# =============================================================================
# Pydantic Models
# =============================================================================

class InitRequest(BaseModel):
    """Open an export session"""
    width: int = Field(..., ge=1, le=16384, description="Frame width in pixels")
    height: int = Field(..., ge=1, le=16384, description="Frame height in pixels")
    fps: float = Field(30, gt=0, le=240, description="Frames per second")


class FrameBatchRequest(BaseModel):
    """A batch of encoded frames, in order"""
    frames: List[str] = Field(..., description="PNG data URLs or base64 strings")


class FrameRequest(BaseModel):
    """A single encoded frame"""
    data_url: str = Field(..., description="PNG data URL or base64 string")


class FinalizeRequest(BaseModel):
    """Encode the session into a video file"""
    fps: float = Field(30, gt=0, le=240, description="Output frame rate")
    has_audio: bool = Field(False, description="Mux the uploaded audio track")
    output_format: str = Field("h264", description="h264 (MP4) or prores (MOV)")
    output_path: Optional[str] = Field(None, description="Destination; defaults to the server output directory")

    class Config:
        json_schema_extra = {
            "example": {
                "fps": 30,
                "has_audio": False,
                "output_format": "h264",
                "output_path": "/tmp/export.mp4"
            }
        }


# =============================================================================
# WebSocket Connection Manager
# =============================================================================

class ConnectionManager:
    """WebSocket connection manager for real-time updates"""

    def __init__(self):
        self.client_connections: Dict[str, WebSocket] = {}  # client_id -> connection

    async def connect(self, websocket: WebSocket, client_id: str):
        await websocket.accept()
        self.client_connections[client_id] = websocket
        logger.info(f"WebSocket connected: {client_id}")

    def disconnect(self, client_id: str):
        if client_id in self.client_connections:
            del self.client_connections[client_id]
        logger.info(f"WebSocket disconnected: {client_id}")

    async def broadcast(self, message: Dict[str, Any]):
        for client_id, connection in list(self.client_connections.items()):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send to client {client_id}: {e}")

    async def broadcast_progress(self, event: ProgressEvent):
        await self.broadcast({'type': 'progress', **event.to_dict()})


# =============================================================================
# Application Setup
# =============================================================================

# Global state
connection_manager = ConnectionManager()
start_time = time.time()
_pipeline: Optional[ExportPipeline] = None


def output_dir_chooser(config: ExportConfig):
    """Destination chooser that places exports in the configured output directory"""
    def choose(options: SaveDialogOptions) -> str:
        output_dir = Path(config.output_dir).expanduser()
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        name = Path(options.default_path)
        return str(output_dir / f"{name.stem}_{stamp}{name.suffix}")
    return choose


def configure_pipeline(config: ExportConfig) -> ExportPipeline:
    """Replace the process-wide pipeline with one built from ``config``"""
    global _pipeline
    _pipeline = ExportPipeline(config, chooser=output_dir_chooser(config))
    _pipeline.add_progress_listener(connection_manager.broadcast_progress)
    return _pipeline


def get_pipeline() -> ExportPipeline:
    """Process-wide pipeline, created on first use"""
    if _pipeline is None:
        return configure_pipeline(load_config())
    return _pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Frame Export API Server...")
    yield

    logger.info("Shutting down Frame Export API Server...")
    if _pipeline is not None and _pipeline.is_active:
        await _pipeline.cancel()


app = FastAPI(
    title="Frame Export API",
    description="Persist rendered frames and encode them into a video file with FFmpeg",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REST API Endpoints
# =============================================================================

@app.get("/", tags=["General"])
async def root():
    """API root endpoint"""
    return {
        "name": "Frame Export API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health"
    }


@app.get("/health", tags=["General"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": time.time() - start_time
    }


@app.get("/export/status", tags=["Export"])
async def export_status(pipeline: ExportPipeline = Depends(get_pipeline)):
    """Current session and orchestrator state"""
    return pipeline.status()


@app.post("/export/init", tags=["Export"])
async def export_init(request: InitRequest, pipeline: ExportPipeline = Depends(get_pipeline)):
    """Open a session with a fresh workspace"""
    result = await pipeline.init(request.width, request.height, request.fps)
    return result.to_dict()


@app.post("/export/frames", tags=["Export"])
async def export_save_frame_batch(request: FrameBatchRequest, pipeline: ExportPipeline = Depends(get_pipeline)):
    """Persist a batch of frames"""
    result = await pipeline.save_frame_batch(request.frames)
    return result.to_dict()


@app.post("/export/frame", tags=["Export"])
async def export_save_frame(request: FrameRequest, pipeline: ExportPipeline = Depends(get_pipeline)):
    """Persist a single frame"""
    result = await pipeline.save_frame(request.data_url)
    return result.to_dict()


@app.post("/export/audio", tags=["Export"])
async def export_save_audio(file: UploadFile = File(...), pipeline: ExportPipeline = Depends(get_pipeline)):
    """Upload the session's audio track"""
    data = await file.read()
    result = await pipeline.save_audio(data)
    return result.to_dict()


@app.post("/export/finalize", tags=["Export"])
async def export_finalize(request: FinalizeRequest, pipeline: ExportPipeline = Depends(get_pipeline)):
    """
    Encode the session into a video file.

    Progress is pushed to WebSocket clients while the encoder runs; the
    same result is broadcast as ``export_finished`` when it completes.
    """
    export_request = ExportRequest(
        fps=request.fps,
        has_audio=request.has_audio,
        output_format=request.output_format,
        output_path=request.output_path
    )
    result = await pipeline.finalize(export_request)
    payload = result.to_dict()
    await connection_manager.broadcast({'type': 'export_finished', **payload})
    return payload


@app.post("/export/cancel", tags=["Export"])
async def export_cancel(pipeline: ExportPipeline = Depends(get_pipeline)):
    """Cancel the session, stopping a running encode"""
    result = await pipeline.cancel()
    return result.to_dict()


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str):
    """
    WebSocket endpoint for real-time updates.

    Receives ``progress`` and ``export_finished`` messages; send
    ``{"type": "ping"}`` to check the connection.
    """
    await connection_manager.connect(websocket, client_id)

    try:
        while True:
            data = await websocket.receive_json()

            if isinstance(data, dict) and data.get('type') == 'ping':
                await websocket.send_json({'type': 'pong'})

    except WebSocketDisconnect:
        pass
    except ValueError as e:
        logger.warning(f"Malformed WebSocket message from {client_id}: {e}")
        await websocket.close(code=1003)
    finally:
        connection_manager.disconnect(client_id)


# =============================================================================
# Server Entry Point
# =============================================================================

def run_server(host: str = "127.0.0.1", port: int = 8000):
    """Run the API server"""
    import uvicorn
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
