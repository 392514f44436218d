#!/usr/bin/env python3
"""
Frame Export - Session lifecycle and export orchestration tests

The encoder is replaced by a small shell script (see conftest.py) so these
tests cover process handling, cleanup and cancellation without FFmpeg.
"""

import sys
import time
import asyncio
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from conftest import png_bytes, png_data_url
from frame_export.errors import ErrorType, FFMPEG_INSTALL_GUIDANCE, RemuxFailureError
from frame_export.pipeline import ExportPipeline
from frame_export.video.assembler import ExportOrchestrator, ExportRequest, ExportState
from frame_export.video.ffmpeg_wrapper import EncoderLocator
from frame_export.video.frame_writer import FrameStore


async def open_session(pipeline: ExportPipeline, frames: int):
    init = await pipeline.init(640, 480, 30)
    assert init.ok
    if frames:
        saved = await pipeline.save_frame_batch([png_data_url(color=(i, 0, 0)) for i in range(frames)])
        assert saved.frame_number == frames
    return Path(init.workspace_path)


# =============================================================================
# Session lifecycle
# =============================================================================

def test_init_creates_workspace(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        init = await pipeline.init(640, 480, 30)
        return pipeline, init

    pipeline, init = asyncio.run(scenario())

    assert init.ok
    assert Path(init.workspace_path).is_dir()
    assert init.to_dict() == {'workspace_path': init.workspace_path, 'session_id': init.session_id}
    assert pipeline.is_active
    assert pipeline.status()['frame_count'] == 0


def test_batches_continue_frame_numbering(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        await pipeline.init(640, 480, 30)
        first = await pipeline.save_frame_batch([png_data_url()] * 3)
        single = await pipeline.save_frame(png_data_url())
        second = await pipeline.save_frame_batch([png_data_url()] * 2)
        return pipeline, first, single, second

    pipeline, first, single, second = asyncio.run(scenario())

    assert (first.frame_number, single.frame_number, second.frame_number) == (3, 4, 6)
    assert pipeline.session.store.count_frames() == 6
    names = [p.name for p in pipeline.session.store.list_existing_frames()]
    assert names == [f"frame_{i:06d}.png" for i in range(6)]


def test_operations_require_a_session(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        batch = await pipeline.save_frame_batch([png_data_url()])
        frame = await pipeline.save_frame(png_data_url())
        audio = await pipeline.save_audio(b"audio")
        result = await pipeline.finalize(ExportRequest(fps=30))
        return batch, frame, audio, result

    batch, frame, audio, result = asyncio.run(scenario())

    for outcome in (batch, frame, audio, result):
        assert outcome.error == "Export not initialized"
        assert outcome.error_type is ErrorType.NOT_INITIALIZED
    assert result.to_dict() == {'error': "Export not initialized", 'error_type': 'not_initialized'}


def test_invalid_frame_is_reported(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        await pipeline.init(640, 480, 30)
        bad = await pipeline.save_frame_batch(["data:image/png;base64,abc"])
        return pipeline, bad

    pipeline, bad = asyncio.run(scenario())

    assert bad.error_type is ErrorType.FRAME_WRITE
    assert pipeline.session.frame_count == 0


def test_retry_after_failed_batch_keeps_retried_frame(make_config):
    noise = np.random.default_rng(1).integers(0, 256, (2000, 2000, 3), dtype=np.uint8)

    async def scenario():
        pipeline = ExportPipeline(make_config())
        workspace = Path((await pipeline.init(640, 480, 30)).workspace_path)
        failed = await pipeline.save_frame_batch([noise, "data:image/png;base64,abc"])
        retried = await pipeline.save_frame_batch([png_data_url()])
        return workspace, failed, retried

    workspace, failed, retried = asyncio.run(scenario())

    assert failed.error_type is ErrorType.FRAME_WRITE
    assert retried.frame_number == 1
    assert (workspace / "frame_000000.png").read_bytes() == png_bytes()


def test_unexpected_argument_types_are_reported(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        await open_session(pipeline, 1)
        batch = await pipeline.save_frame_batch(42)
        audio = await pipeline.save_audio("not-bytes")
        generated = await pipeline.save_frame_batch(png_data_url() for _ in range(2))
        return pipeline, batch, audio, generated

    pipeline, batch, audio, generated = asyncio.run(scenario())

    assert batch.error_type is ErrorType.UNKNOWN
    assert batch.to_dict()["error_type"] == "unknown"
    assert audio.error_type is ErrorType.UNKNOWN
    assert generated.frame_number == 3
    assert pipeline.session.frame_count == 3


def test_empty_batch_is_a_no_op(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        await open_session(pipeline, 2)
        return await pipeline.save_frame_batch([])

    assert asyncio.run(scenario()).frame_number == 2


def test_reinit_discards_idle_session(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        first = await open_session(pipeline, 2)
        second = await open_session(pipeline, 0)
        return pipeline, first, second

    pipeline, first, second = asyncio.run(scenario())

    assert not first.exists()
    assert second.is_dir()
    assert pipeline.session.frame_count == 0


def test_cancel_before_finalize_removes_workspace(make_config):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        workspace = await open_session(pipeline, 3)
        result = await pipeline.cancel()
        after = await pipeline.save_frame_batch([png_data_url()])
        again = await pipeline.cancel()
        return pipeline, workspace, result, after, again

    pipeline, workspace, result, after, again = asyncio.run(scenario())

    assert result.to_dict() == {'canceled': True}
    assert again.canceled
    assert not workspace.exists()
    assert not pipeline.is_active
    assert after.error_type is ErrorType.NOT_INITIALIZED


# =============================================================================
# Finalize failures
# =============================================================================

def test_finalize_without_frames(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        workspace = await open_session(pipeline, 0)
        result = await pipeline.finalize(ExportRequest(fps=30, output_path=str(tmp_path / "out.mp4")))
        return pipeline, workspace, result

    pipeline, workspace, result = asyncio.run(scenario())

    assert result.error == "No frames were rendered. Export failed."
    assert result.error_type is ErrorType.NO_FRAMES_RENDERED
    assert not workspace.exists()
    assert not pipeline.is_active
    assert fake.calls == []


def test_finalize_without_encoder(make_config, tmp_path):
    async def scenario():
        pipeline = ExportPipeline(make_config())
        workspace = await open_session(pipeline, 2)
        result = await pipeline.finalize(ExportRequest(fps=30, output_path=str(tmp_path / "out.mp4")))
        return pipeline, workspace, result

    pipeline, workspace, result = asyncio.run(scenario())

    assert result.error_type is ErrorType.ENCODER_NOT_FOUND
    assert result.error == FFMPEG_INSTALL_GUIDANCE
    assert "brew install ffmpeg" in result.error
    assert "https://ffmpeg.org" in result.error
    assert not workspace.exists()
    assert not (tmp_path / "out.mp4").exists()


class VanishedEncoder(EncoderLocator):
    """Reports an encoder that no longer exists when it is started"""

    def locate(self):
        return "/nonexistent/bin/ffmpeg"


def test_spawn_failure(make_config, tmp_path):
    async def scenario():
        pipeline = ExportPipeline(make_config(), locator=VanishedEncoder())
        workspace = await open_session(pipeline, 1)
        result = await pipeline.finalize(ExportRequest(fps=30, output_path=str(tmp_path / "out.mp4")))
        return workspace, result

    workspace, result = asyncio.run(scenario())

    assert result.error_type is ErrorType.SPAWN_FAILURE
    assert result.error.startswith("Failed to run FFmpeg: ")
    assert not workspace.exists()


def test_encode_failure_reports_diagnostics(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg(encode_exit=1)
    destination = tmp_path / "out.mp4"

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        workspace = await open_session(pipeline, 2)
        result = await pipeline.finalize(ExportRequest(fps=30, output_path=str(destination)))
        return pipeline, workspace, result

    pipeline, workspace, result = asyncio.run(scenario())

    assert result.error_type is ErrorType.ENCODE_FAILURE
    assert result.error.startswith("FFmpeg failed (code 1).\n\nDetails:\n")
    assert "Invalid data found when processing input" in result.error
    assert len(fake.calls) == 1
    assert not destination.exists()
    assert not workspace.exists()
    assert pipeline.state is ExportState.FAILED


def test_encode_failure_details_are_truncated(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg(encode_exit=1, error_text="x" * 2000)

    async def scenario():
        pipeline = ExportPipeline(make_config(fake, diagnostic_tail_chars=100))
        await open_session(pipeline, 1)
        return await pipeline.finalize(ExportRequest(fps=30, output_path=str(tmp_path / "out.mp4")))

    result = asyncio.run(scenario())

    details = result.error.split("Details:\n", 1)[1]
    assert len(details) == 100


def test_remux_failure_leaves_no_destination(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg(remux_exit=1)
    destination = tmp_path / "out.mp4"

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        workspace = await open_session(pipeline, 2)
        result = await pipeline.finalize(ExportRequest(fps=30, output_format="h264", output_path=str(destination)))
        return workspace, result

    workspace, result = asyncio.run(scenario())

    assert result.error_type is ErrorType.REMUX_FAILURE
    assert result.error == "Faststart failed (code 1)"
    assert len(fake.calls) == 2
    assert not destination.exists()
    assert list(tmp_path.glob(".out.partial*")) == []
    assert not workspace.exists()


# =============================================================================
# Successful exports
# =============================================================================

def test_prores_export_moves_encoder_output(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()
    destination = tmp_path / "exports" / "clip.mov"

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        workspace = await open_session(pipeline, 3)
        result = await pipeline.finalize(ExportRequest(fps=30, output_format="prores", output_path=str(destination)))
        return pipeline, workspace, result

    pipeline, workspace, result = asyncio.run(scenario())

    assert result.to_dict() == {
        'success': True,
        'output_path': str(destination),
        'file_size': len(b'FAKE-VIDEO-PAYLOAD'),
    }
    assert destination.read_bytes() == b'FAKE-VIDEO-PAYLOAD'
    assert len(fake.calls) == 1
    assert 'prores_ks' in fake.calls[0]
    assert fake.calls[0][-1].endswith("output_temp.mov")
    assert not workspace.exists()
    assert not pipeline.is_active
    assert pipeline.state is ExportState.DONE


def test_h264_export_runs_faststart_pass(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()
    destination = tmp_path / "clip.mp4"

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        workspace = await open_session(pipeline, 3)
        result = await pipeline.finalize(ExportRequest(fps=24, output_format="h264", output_path=str(destination)))
        return workspace, result

    workspace, result = asyncio.run(scenario())

    assert result.success
    assert result.file_size == destination.stat().st_size
    assert destination.read_bytes() == b'FAKE-VIDEO-PAYLOAD+faststart'

    encode, remux = fake.calls
    assert encode[encode.index('-framerate') + 1] == '24'
    assert encode[encode.index('-c:v') + 1] == 'libx264'
    assert encode[-1].endswith("output_temp.mp4")
    assert remux[remux.index('-i') + 1] == encode[-1]
    assert '+faststart' in remux
    assert list(tmp_path.glob(".clip.partial*")) == []
    assert not workspace.exists()


def test_audio_is_muxed_when_present(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        await open_session(pipeline, 2)
        audio = await pipeline.save_audio(b"webm-bytes")
        result = await pipeline.finalize(
            ExportRequest(fps=30, has_audio=True, output_format="prores", output_path=str(tmp_path / "a.mov"))
        )
        return audio, result

    audio, result = asyncio.run(scenario())

    assert audio.audio_path.endswith("audio.webm")
    assert result.success
    encode = fake.calls[0]
    assert encode.count('-i') == 2
    assert encode[encode.index('-c:a') + 1] == 'aac'
    assert '-shortest' in encode


def test_missing_audio_exports_video_only(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        await open_session(pipeline, 2)
        return await pipeline.finalize(
            ExportRequest(fps=30, has_audio=True, output_format="prores", output_path=str(tmp_path / "a.mov"))
        )

    result = asyncio.run(scenario())

    assert result.success
    assert fake.calls[0].count('-i') == 1
    assert '-an' in fake.calls[0]


def test_progress_is_strictly_increasing_and_bounded(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg(progress="frame=    1\\rframe=    3\\rframe=    3\\rframe=    2\\rframe=   99\\r")
    events = []

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        pipeline.add_progress_listener(events.append)
        await open_session(pipeline, 5)
        result = await pipeline.finalize(ExportRequest(fps=30, output_format="prores", output_path=str(tmp_path / "p.mov")))
        await asyncio.sleep(0)
        return result

    result = asyncio.run(scenario())

    assert result.success
    assert [e.frame for e in events] == [1, 3, 5]
    assert all(e.total == 5 for e in events)


def test_async_progress_listener(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()
    events = []

    async def listener(event):
        events.append(event.to_dict())

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        pipeline.add_progress_listener(listener)
        await open_session(pipeline, 2)
        await pipeline.finalize(ExportRequest(fps=30, output_format="prores", output_path=str(tmp_path / "p.mov")))
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert events == [{'frame': 1, 'total': 2}, {'frame': 2, 'total': 2}]


def test_removed_listener_is_not_called(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()
    kept, removed = [], []

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        pipeline.add_progress_listener(kept.append)
        pipeline.add_progress_listener(removed.append)
        pipeline.remove_progress_listener(removed.append)
        await open_session(pipeline, 2)
        await pipeline.finalize(ExportRequest(fps=30, output_format="prores", output_path=str(tmp_path / "p.mov")))
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert [e.frame for e in kept] == [1, 2]
    assert removed == []


def test_package_exports():
    import frame_export

    assert frame_export.ExportPipeline is ExportPipeline
    assert frame_export.load_config().frame_digits == 6


# =============================================================================
# Destination choice
# =============================================================================

def test_chooser_cancel(make_config, fake_ffmpeg):
    fake = fake_ffmpeg()
    asked = []

    def chooser(options):
        asked.append(options)
        return None

    async def scenario():
        pipeline = ExportPipeline(make_config(fake), chooser=chooser)
        workspace = await open_session(pipeline, 2)
        result = await pipeline.finalize(ExportRequest(fps=30, output_format="prores"))
        return pipeline, workspace, result

    pipeline, workspace, result = asyncio.run(scenario())

    assert result.to_dict() == {'canceled': True}
    assert asked[0].title == "Save Exported Video"
    assert asked[0].default_path == "frame_export.mov"
    assert asked[0].filters == [{'name': 'QuickTime Movie', 'extensions': ['mov']}]
    assert fake.calls == []
    assert not workspace.exists()
    assert pipeline.state is ExportState.CANCELLED


def test_async_chooser_supplies_destination(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()

    async def chooser(options):
        return str(tmp_path / options.default_path)

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        await open_session(pipeline, 2)
        return await pipeline.finalize(ExportRequest(fps=30), chooser=chooser)

    result = asyncio.run(scenario())

    assert result.success
    assert result.output_path == str(tmp_path / "frame_export.mp4")


def test_no_destination_and_no_chooser_is_a_cancel(make_config, fake_ffmpeg):
    fake = fake_ffmpeg()

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        await open_session(pipeline, 1)
        return await pipeline.finalize(ExportRequest(fps=30))

    assert asyncio.run(scenario()).canceled


# =============================================================================
# Cancellation during encoding
# =============================================================================

def test_cancel_stops_running_encoder(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg(encode_sleep=30)
    destination = tmp_path / "out.mp4"

    async def scenario():
        started = asyncio.Event()
        pipeline = ExportPipeline(make_config(fake))
        pipeline.add_progress_listener(lambda event: started.set())
        workspace = await open_session(pipeline, 3)

        finalize = asyncio.ensure_future(
            pipeline.finalize(ExportRequest(fps=30, output_path=str(destination)))
        )
        await asyncio.wait_for(started.wait(), 10)

        busy = await pipeline.init(640, 480, 30)
        busy_write = await pipeline.save_frame_batch([png_data_url()])
        cancel = await pipeline.cancel()
        result = await asyncio.wait_for(finalize, 10)
        return pipeline, workspace, busy, busy_write, cancel, result

    start = time.monotonic()
    pipeline, workspace, busy, busy_write, cancel, result = asyncio.run(scenario())
    elapsed = time.monotonic() - start

    assert busy.error_type is ErrorType.SESSION_BUSY
    assert busy_write.error_type is ErrorType.SESSION_BUSY
    assert cancel.canceled
    assert result.canceled
    assert elapsed < 20
    assert not workspace.exists()
    assert not destination.exists()
    assert not pipeline.is_active
    assert len(fake.calls) == 1


def test_cancel_during_faststart_pass(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg(remux_sleep=30)
    destination = tmp_path / "out.mp4"
    partial = tmp_path / ".out.partial.mp4"

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        workspace = await open_session(pipeline, 2)

        finalize = asyncio.ensure_future(
            pipeline.finalize(ExportRequest(fps=30, output_path=str(destination)))
        )
        while not partial.exists():
            assert not finalize.done()
            await asyncio.sleep(0.05)
        state = pipeline.state

        cancel = await asyncio.wait_for(pipeline.cancel(), 10)
        result = await asyncio.wait_for(finalize, 10)
        return pipeline, workspace, state, cancel, result

    pipeline, workspace, state, cancel, result = asyncio.run(scenario())

    assert state is ExportState.REMUXING
    assert cancel.canceled
    assert result.to_dict() == {'canceled': True}
    assert not workspace.exists()
    assert not destination.exists()
    assert not partial.exists()
    assert list(tmp_path.glob(".out.partial*")) == []
    assert not pipeline.is_active
    assert len(fake.calls) == 2


def test_cancel_after_finalize_is_harmless(make_config, fake_ffmpeg, tmp_path):
    fake = fake_ffmpeg()

    async def scenario():
        pipeline = ExportPipeline(make_config(fake))
        await open_session(pipeline, 1)
        result = await pipeline.finalize(ExportRequest(fps=30, output_format="prores", output_path=str(tmp_path / "x.mov")))
        cancel = await pipeline.cancel()
        return result, cancel

    result, cancel = asyncio.run(scenario())

    assert result.success
    assert cancel.canceled
    assert (tmp_path / "x.mov").exists()


# =============================================================================
# Orchestrator
# =============================================================================

def test_orchestrator_removes_temp_output(fake_ffmpeg, tmp_path):
    for remux_exit in (0, 1):
        fake = fake_ffmpeg(remux_exit=remux_exit)
        store = FrameStore.create(scratch_dir=tmp_path / "scratch")
        asyncio.run(store.write_batch([png_data_url()] * 2, 0))
        orchestrator = ExportOrchestrator(EncoderLocator([str(fake.path)]))
        request = ExportRequest(fps=30, output_path=str(tmp_path / f"out{remux_exit}.mp4"))

        try:
            output = asyncio.run(orchestrator.run(store, request))
        except RemuxFailureError:
            assert remux_exit == 1
        else:
            assert remux_exit == 0
            assert output.frames == 2
            assert output.output_path.read_bytes() == b'FAKE-VIDEO-PAYLOAD+faststart'

        assert not store.temp_output_path("mp4").exists()
        assert store.count_frames() == 2
        assert len(orchestrator.invocations) == 2
