"""
Central path configuration for Breeze Portal.

All filesystem paths are derived from a single base directory.

Path Structure:
    $TMPDIR/breeze-portal/
    └── run/               (Runtime state: emulator signal files)
        └── esp_<device_id>_state

Usage:
    from breeze_portal.paths import get_paths

    paths = get_paths()
    signal_file = paths.state_signal_path("esp32-001")
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True, slots=True)
class Paths:
    """
    Immutable container for filesystem paths used by portal processes.

    All paths are derived from base_dir.
    """

    base_dir: Path
    runtime_dir: Path

    def state_signal_path(self, device_id: str) -> Path:
        """Signal file an emulator mirrors its actuator state into."""
        return self.runtime_dir / f"esp_{device_id}_state"


def build_paths(base_dir: Optional[Path] = None) -> Paths:
    """
    Build Paths object from base directory.

    Defaults to $TMPDIR/breeze-portal; BREEZE_BASE_DIR overrides it.
    """
    if base_dir is None:
        base_str = os.environ.get("BREEZE_BASE_DIR")
        base_dir = Path(base_str) if base_str else Path(tempfile.gettempdir()) / "breeze-portal"

    return Paths(
        base_dir=base_dir,
        runtime_dir=base_dir / "run",
    )


def ensure_dirs(paths: Paths) -> None:
    """Create base and runtime directories if they don't exist."""
    for dir_path in (paths.base_dir, paths.runtime_dir):
        dir_path.mkdir(parents=True, exist_ok=True)


# Global instance (lazy-initialized)
_paths: Optional[Paths] = None


def get_paths() -> Paths:
    """
    Get the global Paths instance.

    Lazily initializes on first call using build_paths() defaults.
    """
    global _paths
    if _paths is None:
        _paths = build_paths()
    return _paths


def set_paths(paths: Paths) -> None:
    """Set the global Paths instance (tests, custom layouts)."""
    global _paths
    _paths = paths


def reset_paths() -> None:
    """Force get_paths() to rebuild from defaults on next call."""
    global _paths
    _paths = None
