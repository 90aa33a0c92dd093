"""
ASTRYON CONFIGURATION - Typed Settings From astryon.toml

Configuration is loaded once from config/astryon.toml and converted into
typed msgspec sections. Every component receives the section it needs
instead of reading files itself.

Sections:
    [llm]      model ids, temperature, timeout
    [layout]   placement radii and Nexus spacing
    [pacing]   delays between sequential appends and pipeline stages
    [gap]      orchestrator limits
    [library]  SQLite location of the Universe Library

Environment overrides (applied after the file):
    ASTRYON_CONFIG              alternate config file path
    ASTRYON_LLM_MODEL           [llm].model
    ASTRYON_LLM_FALLBACK_MODEL  [llm].fallback_model
    ASTRYON_LIBRARY_PATH        [library].path

Usage:
    from infrastructure.config import get_config

    config = get_config()
    await asyncio.sleep(config.pacing.merge_delay)
"""
import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import msgspec

from core.layout import LayoutConfig


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "astryon.toml"


# =============================================================================
# SECTIONS
# =============================================================================

class LLMConfig(msgspec.Struct, kw_only=True):
    model: str = "anthropic/claude-sonnet-4-5-20250929"
    mundane_model: Optional[str] = None
    fallback_model: Optional[str] = None
    temperature: float = 0.7
    timeout: Optional[float] = None
    max_tokens: int = 2048
    structured_max_tokens: int = 4096


class PacingConfig(msgspec.Struct, kw_only=True):
    """Delays in seconds."""
    merge_delay: float = 0.1           # between sequential sibling appends
    stage_delay: float = 0.5           # doctrinal UI checkpoints
    error_reset_delay: float = 3.0     # error shown before returning to idle
    complete_hold_delay: float = 2.0   # complete shown before returning to idle


class GapConfig(msgspec.Struct, kw_only=True):
    max_parallel_tasks: int = 5
    context_char_limit: int = 0        # 0 = never truncate node content


class LibraryConfig(msgspec.Struct, kw_only=True):
    path: str = "data/universes.db"


class AstryonConfig(msgspec.Struct, kw_only=True):
    llm: LLMConfig = msgspec.field(default_factory=LLMConfig)
    layout: LayoutConfig = msgspec.field(default_factory=LayoutConfig)
    pacing: PacingConfig = msgspec.field(default_factory=PacingConfig)
    gap: GapConfig = msgspec.field(default_factory=GapConfig)
    library: LibraryConfig = msgspec.field(default_factory=LibraryConfig)


# =============================================================================
# LOADING
# =============================================================================

def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load raw configuration from astryon.toml.

    Returns:
        Dict with all configuration sections (empty if the file is missing
        or unreadable)
    """
    if path is None:
        path = Path(os.getenv("ASTRYON_CONFIG", str(DEFAULT_CONFIG_PATH)))
    try:
        import tomllib

        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, ValueError) as e:
        warnings.warn(f"Failed to load config from TOML: {e}")
        return {}


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ASTRYON_* environment variables on top of raw TOML data."""
    overrides = {
        "ASTRYON_LLM_MODEL": ("llm", "model"),
        "ASTRYON_LLM_FALLBACK_MODEL": ("llm", "fallback_model"),
        "ASTRYON_LIBRARY_PATH": ("library", "path"),
    }
    for env_name, (section, key) in overrides.items():
        value = os.getenv(env_name)
        if value:
            raw.setdefault(section, {})[key] = value
    return raw


def load_config(path: Optional[Path] = None) -> AstryonConfig:
    """
    Build a typed configuration.

    Raises:
        msgspec.ValidationError: If a section has the wrong shape (e.g. radii
                                 that do not shrink with depth)
    """
    raw = apply_env_overrides(load_toml_config(path))
    return msgspec.convert(raw, type=AstryonConfig)


# =============================================================================
# SINGLETON INSTANCE
# =============================================================================

_config: Optional[AstryonConfig] = None


def get_config() -> AstryonConfig:
    """Get the process-wide configuration (loaded on first use)."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[AstryonConfig]) -> None:
    """Replace the process-wide configuration (for testing)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
