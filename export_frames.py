#!/usr/bin/env python3
"""
Frame Export - Command Line Interface

Encode a directory of rendered frames (and optional audio) into a video
using the same pipeline the API server exposes.

Usage:
    python export_frames.py --frames renders/ --output out.mp4
    python export_frames.py --frames renders/ --format prores --output out.mov
    python export_frames.py --frames renders/ --audio track.webm --fps 60 --output out.mp4

Frames are taken in sorted filename order and renumbered contiguously.
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from PIL import Image

from frame_export.config import load_config
from frame_export.pipeline import ExportPipeline
from frame_export.video import ExportRequest, ProgressEvent

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.bmp', '.webp', '.tif', '.tiff'}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging"""
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler()]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
        handlers=handlers
    )


def collect_frames(frame_dir: Path) -> List[Path]:
    """Image files in ``frame_dir``, in filename order"""
    return sorted(
        p for p in frame_dir.iterdir()
        if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS
    )


def load_frame(path: Path):
    """PNG files pass through untouched; other formats are re-encoded"""
    if path.suffix.lower() == '.png':
        return path.read_bytes()
    with Image.open(path) as img:
        return img.convert('RGB')


def print_progress(event: ProgressEvent):
    progress = event.frame / event.total if event.total > 0 else 0
    bar_length = 30
    filled = int(bar_length * progress)
    bar = "█" * filled + "░" * (bar_length - filled)
    print(f"\r   [{bar}] {progress*100:.0f}% - frame {event.frame}/{event.total}", end="", flush=True)
    if event.frame == event.total:
        print()


async def run_export(args) -> int:
    """Feed the frame directory through the pipeline"""
    frame_dir = Path(args.frames)
    if not frame_dir.is_dir():
        print(f"Error: frame directory not found: {frame_dir}")
        return 1

    frames = collect_frames(frame_dir)
    if not frames:
        print(f"Error: no images found in {frame_dir}")
        return 1

    config = load_config(args.config)
    pipeline = ExportPipeline(config)
    pipeline.add_progress_listener(print_progress)

    with Image.open(frames[0]) as first:
        width, height = first.size

    print(f"\n🎬 Exporting Video")
    print(f"   Frames: {len(frames)} from {frame_dir}")
    print(f"   Resolution: {width}x{height}")
    print(f"   FPS: {args.fps}")
    print(f"   Format: {args.format}")
    print()

    init = await pipeline.init(width, height, args.fps)
    if not init.ok:
        print(f"\n❌ Error: {init.error}")
        return 1

    for start in range(0, len(frames), args.batch_size):
        batch = [load_frame(p) for p in frames[start:start + args.batch_size]]
        saved = await pipeline.save_frame_batch(batch)
        if not saved.ok:
            print(f"\n❌ Error: {saved.error}")
            await pipeline.cancel()
            return 1

    has_audio = False
    if args.audio:
        audio = await pipeline.save_audio(Path(args.audio).read_bytes())
        if not audio.ok:
            print(f"\n❌ Error: {audio.error}")
            await pipeline.cancel()
            return 1
        has_audio = True

    result = await pipeline.finalize(ExportRequest(
        fps=args.fps,
        has_audio=has_audio,
        output_format=args.format,
        output_path=args.output
    ))

    if result.success:
        print(f"\n✅ Export Complete!")
        print(f"   Output: {result.output_path}")
        print(f"   Size: {result.file_size / 1024 / 1024:.2f} MB")
        return 0
    if result.canceled:
        print("\n⚠️  Export canceled")
        return 1

    print(f"\n❌ Export Failed!")
    print(f"   Error: {result.error}")
    return 1


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="Frame Export - Encode rendered frames into a video",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python export_frames.py --frames renders/ --output out.mp4
  python export_frames.py --frames renders/ --format prores --output out.mov
  python export_frames.py --frames renders/ --audio track.webm --output out.mp4
        """
    )

    parser.add_argument(
        '--frames', '-f',
        type=str,
        required=True,
        help='Directory containing the rendered frames'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        required=True,
        help='Destination video file'
    )

    parser.add_argument(
        '--fps',
        type=float,
        default=30,
        help='Frames per second (default: 30)'
    )

    parser.add_argument(
        '--format',
        choices=['h264', 'prores'],
        default='h264',
        help='h264 for MP4 playback, prores for editing (default: h264)'
    )

    parser.add_argument(
        '--audio', '-a',
        type=str,
        help='Audio file to mux into the video'
    )

    parser.add_argument(
        '--batch-size',
        type=int,
        default=30,
        help='Frames written per batch (default: 30)'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        help='YAML file overriding the default configuration'
    )

    # Logging
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--log-file',
        type=str,
        help='Save logs to file'
    )

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_file)

    try:
        return asyncio.run(run_export(args))
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
