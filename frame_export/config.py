"""
Export Configuration

Loads the packaged YAML defaults, merges an optional user file and
keyword overrides, and exposes the result as an ExportConfig.
"""

import sys
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, fields
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).parent / "configs"


@dataclass
class ExportConfig:
    """Resolved export settings"""
    # Workspace
    scratch_dir: Optional[str] = None
    workspace_prefix: str = "frame-export-"
    frame_prefix: str = "frame"
    frame_digits: int = 6
    frame_extension: str = ".png"
    audio_filename: str = "audio.webm"
    temp_output_stem: str = "output_temp"
    default_output_name: str = "frame_export"
    output_dir: str = "./outputs"

    # Encoder
    encoder_candidates: Optional[List[str]] = None  # None = built-in list
    probe_timeout_seconds: float = 5.0
    diagnostic_tail_chars: int = 500
    cancel_grace_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the sectioned YAML layout onto ExportConfig field names"""
    export = data.get('export', {}) or {}
    encoder = data.get('encoder', {}) or {}
    logging_section = data.get('logging', {}) or {}

    flat: Dict[str, Any] = dict(export)

    candidates = list(encoder.get('candidates') or [])
    if sys.platform == 'win32':
        # Windows installs first, bare name resolution last
        candidates = list(encoder.get('windows_candidates') or []) + candidates
    if 'candidates' in encoder or 'windows_candidates' in encoder:
        flat['encoder_candidates'] = candidates

    for key in ('probe_timeout_seconds', 'diagnostic_tail_chars', 'cancel_grace_seconds'):
        if key in encoder:
            flat[key] = encoder[key]

    if 'level' in logging_section:
        flat['log_level'] = str(logging_section['level']).upper()

    return flat


def load_config(
    path: Optional[Union[str, Path]] = None,
    config_dir: Optional[Union[str, Path]] = None,
    **overrides
) -> ExportConfig:
    """
    Load export configuration.

    Args:
        path: Optional user YAML file layered over the defaults
        config_dir: Directory holding defaults.yaml (default: packaged configs)
        **overrides: ExportConfig field overrides applied last

    Returns:
        ExportConfig
    """
    config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR

    values: Dict[str, Any] = {}
    defaults_path = config_dir / "defaults.yaml"
    if defaults_path.exists():
        values.update(_flatten(_read_yaml(defaults_path)))
    else:
        logger.warning(f"Default config not found: {defaults_path}")

    if path is not None:
        user_path = Path(path).expanduser()
        if not user_path.exists():
            raise FileNotFoundError(f"Config file not found: {user_path}")
        values.update(_flatten(_read_yaml(user_path)))

    values.update(overrides)

    known = {f.name for f in fields(ExportConfig)}
    for key in sorted(set(values) - known):
        logger.warning(f"Ignoring unknown config key '{key}'")

    return ExportConfig(**{k: v for k, v in values.items() if k in known})
