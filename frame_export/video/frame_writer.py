"""
Frame Writer - On-disk workspace for one export session

This module handles:
- Workspace creation and removal
- Payload decoding (data URLs, base64, raw bytes, arrays, PIL images)
- Sequential frame naming
- Concurrent batch writing
- The session's single audio file
"""

import io
import re
import base64
import shutil
import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union
import numpy as np
from PIL import Image

from ..errors import FrameWriteError

logger = logging.getLogger(__name__)

FramePayload = Union[str, bytes, bytearray, memoryview, np.ndarray, Image.Image]

_DATA_URL_PREFIX = re.compile(r'^data:[\w/.+-]*(;[\w=.+-]+)*;base64,', re.IGNORECASE)


def _array_to_png(frame: np.ndarray) -> bytes:
    """Encode an RGB(A) or grayscale frame array as PNG"""
    # Ensure correct shape [H, W, C]
    if frame.ndim == 3 and frame.shape[0] in [1, 3, 4] and frame.shape[-1] not in [1, 3, 4]:
        # Likely [C, H, W] format
        frame = np.transpose(frame, (1, 2, 0))

    if frame.ndim == 3 and frame.shape[-1] == 1:
        frame = frame[..., 0]

    # Convert to uint8 if needed
    if frame.dtype == np.float32 or frame.dtype == np.float64:
        frame = (frame * 255).clip(0, 255).astype(np.uint8)
    elif frame.dtype != np.uint8:
        frame = frame.clip(0, 255).astype(np.uint8)

    return _image_to_png(Image.fromarray(frame))


def _image_to_png(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format='PNG', compress_level=6)
    return buffer.getvalue()


def decode_payload(payload: Any) -> bytes:
    """
    Turn one frame payload into encoded image bytes.

    Strings are treated as base64, with any ``data:image/...;base64,``
    marker stripped first. Bytes are written as-is unless they carry the
    same marker.
    """
    if isinstance(payload, np.ndarray):
        return _array_to_png(payload)

    if isinstance(payload, Image.Image):
        return _image_to_png(payload)

    if isinstance(payload, (bytes, bytearray, memoryview)):
        data = bytes(payload)
        if not data.startswith(b'data:'):
            return data
        payload = data.decode('ascii', errors='replace')

    if isinstance(payload, str):
        encoded = _DATA_URL_PREFIX.sub('', payload.strip(), count=1)
        return base64.b64decode(encoded)

    raise TypeError(f"Unsupported frame payload type: {type(payload).__name__}")


class FrameStore:
    """
    A single session's on-disk workspace.

    Frames are stored as ``<prefix>_<index>.png`` with a fixed zero-padded
    width so FFmpeg can read them through a numeric pattern. Indices must
    stay contiguous from 0: the image2 demuxer stops at the first gap.
    """

    def __init__(
        self,
        workspace: Union[str, Path],
        prefix: str = "frame",
        zero_pad: int = 6,
        extension: str = ".png",
        audio_filename: str = "audio.webm",
        temp_output_stem: str = "output_temp"
    ):
        self.workspace = Path(workspace)
        self.prefix = prefix
        self.zero_pad = zero_pad
        self.extension = extension
        self.audio_filename = audio_filename
        self.temp_output_stem = temp_output_stem

    @classmethod
    def create(
        cls,
        scratch_dir: Optional[Union[str, Path]] = None,
        workspace_prefix: str = "frame-export-",
        **kwargs
    ) -> "FrameStore":
        """Allocate a fresh workspace directory under the scratch area"""
        if scratch_dir is not None:
            Path(scratch_dir).mkdir(parents=True, exist_ok=True)
        workspace = tempfile.mkdtemp(
            prefix=workspace_prefix,
            dir=str(scratch_dir) if scratch_dir is not None else None
        )
        return cls(workspace, **kwargs)

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def frame_path(self, index: int) -> Path:
        """Generate filename for frame"""
        filename = f"{self.prefix}_{str(index).zfill(self.zero_pad)}{self.extension}"
        return self.workspace / filename

    def get_frame_pattern(self) -> str:
        """Full FFmpeg input pattern, e.g. ".../frame_%06d.png" """
        return str(self.workspace / f"{self.prefix}_%0{self.zero_pad}d{self.extension}")

    def get_frame_glob(self) -> str:
        return f"{self.prefix}_*{self.extension}"

    def list_existing_frames(self) -> List[Path]:
        if not self.workspace.exists():
            return []
        return sorted(self.workspace.glob(self.get_frame_glob()))

    def count_frames(self) -> int:
        return len(self.list_existing_frames())

    @property
    def audio_path(self) -> Path:
        return self.workspace / self.audio_filename

    def has_audio(self) -> bool:
        return self.audio_path.is_file()

    def temp_output_path(self, extension: str) -> Path:
        return self.workspace / f"{self.temp_output_stem}.{extension.lstrip('.')}"

    def exists(self) -> bool:
        return self.workspace.exists()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_payload(self, path: Path, payload: Any) -> Path:
        try:
            path.write_bytes(decode_payload(payload))
        except (OSError, ValueError, TypeError) as e:
            raise FrameWriteError(f"Failed to write {path.name}: {e}") from e
        return path

    async def write_frame(self, payload: FramePayload, index: int) -> Path:
        """Write a single frame at ``index``"""
        return await asyncio.to_thread(self._write_payload, self.frame_path(index), payload)

    async def write_batch(self, payloads: Sequence[FramePayload], start_index: int) -> List[Path]:
        """
        Write a batch of frames concurrently, numbered from ``start_index``.

        Every write is awaited before returning, even after one has failed;
        the first failure is then raised.
        Frames already written by a failing batch are left in place.
        """
        tasks = [
            asyncio.to_thread(self._write_payload, self.frame_path(start_index + i), payload)
            for i, payload in enumerate(payloads)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        logger.debug(f"Wrote {len(results)} frames to {self.workspace}")
        return list(results)

    async def write_audio(self, data: Union[bytes, bytearray, memoryview]) -> Path:
        """Write (or replace) the session's audio track"""
        path = self.audio_path
        await asyncio.to_thread(path.write_bytes, bytes(data))
        logger.info(f"Audio saved: {path}, size: {len(data)} bytes")
        return path

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def destroy(self) -> bool:
        """
        Recursively remove the workspace, skipping files that cannot be
        removed.

        Returns:
            True if a workspace directory was present
        """
        if not self.workspace.exists():
            return False

        shutil.rmtree(self.workspace, ignore_errors=True)
        if self.workspace.exists():
            logger.warning(f"Cleanup left files behind in {self.workspace}")
        else:
            logger.info(f"Cleaned up workspace {self.workspace}")
        return True
