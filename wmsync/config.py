"""
Harness configuration.

Defaults can be overridden through WMSYNC_* environment variables, and the
CLI flags override both.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_WM_CONFIG = PACKAGE_DIR / "testdata" / "i3.config"
DEFAULT_ARTIFACTS = Path("_artifacts")


@dataclass(frozen=True)
class HarnessConfig:
    display: Optional[int] = None  # None: let the X server pick (-displayfd)
    geometry: str = "1280x800x24"
    xserver: str = "Xvfb"
    wm: str = "i3"
    wm_config: Path = DEFAULT_WM_CONFIG
    wm_shmlog_size: int = 5 * 1024 * 1024
    sync_timeout: float = 10.0
    startup_timeout: float = 10.0
    artifacts_dir: Path = DEFAULT_ARTIFACTS

    def with_overrides(self, **changes) -> "HarnessConfig":
        """Return a copy with every non-None value in *changes* applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "HarnessConfig":
        env = os.environ if env is None else env
        changes: Dict[str, object] = {}

        display = env.get("WMSYNC_DISPLAY")
        if display:
            changes["display"] = _parse_number("WMSYNC_DISPLAY", display.lstrip(":"), int)
        if env.get("WMSYNC_GEOMETRY"):
            changes["geometry"] = env["WMSYNC_GEOMETRY"]
        if env.get("WMSYNC_XSERVER"):
            changes["xserver"] = env["WMSYNC_XSERVER"]
        if env.get("WMSYNC_WM"):
            changes["wm"] = env["WMSYNC_WM"]
        if env.get("WMSYNC_WM_CONFIG"):
            changes["wm_config"] = Path(env["WMSYNC_WM_CONFIG"]).expanduser().resolve()
        if env.get("WMSYNC_TIMEOUT"):
            changes["sync_timeout"] = _parse_number("WMSYNC_TIMEOUT", env["WMSYNC_TIMEOUT"], float)
        if env.get("WMSYNC_STARTUP_TIMEOUT"):
            changes["startup_timeout"] = _parse_number(
                "WMSYNC_STARTUP_TIMEOUT", env["WMSYNC_STARTUP_TIMEOUT"], float
            )
        if env.get("WMSYNC_ARTIFACTS"):
            changes["artifacts_dir"] = Path(env["WMSYNC_ARTIFACTS"]).expanduser()
        return cls(**changes)


def _parse_number(var: str, value: str, kind):
    try:
        parsed = kind(value)
    except ValueError:
        raise ValueError(f"{var}: expected {kind.__name__}, got {value!r}") from None
    if parsed < 0:
        raise ValueError(f"{var}: must not be negative, got {value!r}")
    return parsed
