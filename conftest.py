"""
Shared test fixtures: a scriptable stand-in for the FFmpeg executable.
"""

import io
import sys
import stat
import base64
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).parent))

from frame_export.config import load_config


FAKE_FFMPEG_TEMPLATE = """#!/bin/sh
if [ "$1" = "-version" ]; then
    echo "ffmpeg version 6.1-fake Copyright (c) the FFmpeg developers"
    exit 0
fi

echo "$@" >> "{log}"
for last; do :; done

case "$*" in
*faststart*)
    printf 'remuxing\\n' >&2
    if [ {remux_exit} -ne 0 ]; then
        printf 'moov atom not found\\n' >&2
        exit {remux_exit}
    fi
    if [ {remux_sleep} -ne 0 ]; then
        : > "$last"
        exec sleep {remux_sleep}
    fi
    cat "$3" > "$last"
    printf '+faststart' >> "$last"
    exit 0
    ;;
esac

printf '{progress}' >&2
if [ {encode_sleep} -ne 0 ]; then
    exec sleep {encode_sleep}
fi
if [ {encode_exit} -ne 0 ]; then
    printf '{error_text}\\n' >&2
    exit {encode_exit}
fi
printf 'FAKE-VIDEO-PAYLOAD' > "$last"
exit 0
"""


class FakeFFmpeg:
    """Path and invocation log of a generated fake encoder"""

    def __init__(self, path: Path, log: Path):
        self.path = path
        self.log = log

    @property
    def calls(self):
        if not self.log.exists():
            return []
        return [line.split() for line in self.log.read_text().splitlines()]


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """
    Factory for fake FFmpeg scripts.

    The encode pass reports ``progress`` on stderr and writes a fixed
    payload to its last argument; the faststart pass appends a marker to
    a copy of its input.
    """
    if sys.platform == 'win32':
        pytest.skip("fake encoder is a POSIX shell script")

    counter = {'n': 0}

    def make(encode_exit=0, remux_exit=0, encode_sleep=0, remux_sleep=0,
             progress="frame=    1 fps=0.0\\rframe=    2 fps=0.0\\r",
             error_text="Invalid data found when processing input"):
        counter['n'] += 1
        bindir = tmp_path / f"bin{counter['n']}"
        bindir.mkdir()
        path = bindir / "ffmpeg"
        log = bindir / "calls.log"
        path.write_text(FAKE_FFMPEG_TEMPLATE.format(
            log=log,
            encode_exit=encode_exit,
            remux_exit=remux_exit,
            encode_sleep=encode_sleep,
            remux_sleep=remux_sleep,
            progress=progress,
            error_text=error_text,
        ))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeFFmpeg(path, log)

    return make


@pytest.fixture
def make_config(tmp_path):
    """ExportConfig with an isolated scratch area and the given encoder"""
    def make(encoder=None, **overrides):
        candidates = [str(encoder.path)] if encoder is not None else [str(tmp_path / "no-ffmpeg")]
        overrides.setdefault('cancel_grace_seconds', 2.0)
        return load_config(
            scratch_dir=str(tmp_path / "scratch"),
            encoder_candidates=candidates,
            **overrides
        )
    return make


def png_bytes(width=16, height=16, color=(255, 0, 0)) -> bytes:
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), color).save(buffer, format='PNG')
    return buffer.getvalue()


def png_data_url(width=16, height=16, color=(255, 0, 0)) -> str:
    encoded = base64.b64encode(png_bytes(width, height, color)).decode('ascii')
    return f"data:image/png;base64,{encoded}"


def gradient_frame(index: int, width: int, height: int) -> np.ndarray:
    """Synthetic RGB frame that changes with ``index``"""
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[..., 0] = np.linspace(0, 255, width, dtype=np.uint8)[None, :]
    frame[..., 1] = (index * 25) % 256
    frame[..., 2] = np.linspace(255, 0, height, dtype=np.uint8)[:, None]
    return frame
