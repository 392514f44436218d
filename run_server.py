#!/usr/bin/env python3
"""
Frame Export Server Launcher

Launch the HTTP/WebSocket export server.

Usage:
    python run_server.py
    python run_server.py --port 8080
    python run_server.py --output-dir ~/Videos
"""

import argparse
import sys
import os
import logging

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from frame_export.config import load_config


def main():
    parser = argparse.ArgumentParser(
        description="Frame Export - API Server Launcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_server.py                      # Listen on 127.0.0.1:8000
    python run_server.py --port 8080          # Listen on port 8080
    python run_server.py --host 0.0.0.0       # Accept remote connections
    python run_server.py --debug              # Enable debug logging
        """
    )

    parser.add_argument(
        '--host',
        type=str,
        default='127.0.0.1',
        help='Address to bind (default: 127.0.0.1)'
    )

    parser.add_argument(
        '--port', '-p',
        type=int,
        default=8000,
        help='Port to listen on (default: 8000)'
    )

    parser.add_argument(
        '--output-dir', '-o',
        type=str,
        default=None,
        help='Directory for exports without an explicit path (default: from config)'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default=None,
        help='YAML file overriding the default configuration'
    )

    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    overrides = {}
    if args.output_dir:
        overrides['output_dir'] = args.output_dir
    config = load_config(args.config, **overrides)

    # Configure logging
    log_level = logging.DEBUG if args.debug else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("")
    print("  ====================================================")
    print("    Frame Export - Video Export Server")
    print("  ====================================================")
    print("")

    print(f"Starting server on {args.host}:{args.port}...")
    print(f"Output directory: {config.output_dir}")
    print()

    try:
        from frame_export.api import configure_pipeline, run_server
        configure_pipeline(config)
        run_server(host=args.host, port=args.port)
    except ImportError as e:
        print(f"\n❌ Error: {e}")
        print("\nMissing dependencies. Please install:")
        print("    pip install frame-export[api]")
        sys.exit(1)
    except Exception as e:
        print(f"\n❌ Error starting server: {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
