"""Runtime settings loaded from qmdtree.yaml with environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "qmdtree.yaml"
ENV_PREFIX = "QMDTREE_"

DEFAULT_MARK_PRECEDENCE = ("comment", "link", "strikethrough", "strong", "em", "code")


@dataclass(slots=True)
class Settings:
    """Knobs shared by the gateway, transformer and serializer."""

    quarto_bin: str = "quarto"
    render_timeout: float = 600.0
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "qmdtree")
    asset_prefix: str = "/api/assets"
    # Suffix the renderer appends to ids inside the notebook sub-article.
    id_suffix_pattern: str = r"-nb-article$"
    mark_precedence: tuple[str, ...] = DEFAULT_MARK_PRECEDENCE
    split_sentences: bool = True
    # Re-emit source blocks the rendered tree never mentions (hidden cells).
    preserve_unreferenced_blocks: bool = True
    extra_abbreviations: tuple[str, ...] = ()


def find_config_file(start_path: Path | None = None) -> Path | None:
    """Search upward from *start_path* (default: cwd) for qmdtree.yaml."""
    current = Path(start_path or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from YAML, then apply ``QMDTREE_*`` environment overrides."""
    data: dict = {}
    path = config_path or find_config_file()
    if path is not None and Path(path).is_file():
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Failed to load %s (%s); using defaults", path, exc)
            data = {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: top level is not a mapping", path)
            data = {}
        else:
            logger.info("Loaded settings from %s", path)

    for f in fields(Settings):
        env_value = os.environ.get(ENV_PREFIX + f.name.upper())
        if env_value is not None:
            data[f.name] = env_value

    return _settings_from_dict(data)


def _settings_from_dict(data: dict) -> Settings:
    settings = Settings()
    known = {f.name for f in fields(Settings)}
    for key, value in data.items():
        if key not in known:
            logger.warning("Unknown setting %r ignored", key)
            continue
        setattr(settings, key, _coerce(key, value))
    return settings


def _coerce(key: str, value):
    if key == "cache_dir":
        return Path(value).expanduser()
    if key == "render_timeout":
        return float(value)
    if key in ("split_sentences", "preserve_unreferenced_blocks"):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if key in ("mark_precedence", "extra_abbreviations"):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        return tuple(value)
    return str(value)
