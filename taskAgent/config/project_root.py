"""Project root path detection - works regardless of working directory."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=1)
def get_package_root() -> Path:
    """Get absolute path to the installed taskAgent package directory.

    Bundled configuration (modes, approval rules, prompt templates) lives
    under this directory, so it resolves the same way from a source checkout
    and from an installed wheel.

    Example:
        >>> root = get_package_root()
        >>> modes_file = root / "config" / "modes.yaml"
    """
    # Go up: project_root.py -> config/ -> taskAgent/
    package_root = Path(__file__).resolve().parent.parent

    if not (package_root / "config").is_dir():
        raise RuntimeError(
            f"Could not locate package root. Expected 'config' directory at {package_root}"
        )

    return package_root


def resolve_config_path(relative_path: str | Path) -> Path:
    """Resolve a path relative to the bundled config directory.

    Example:
        >>> resolve_config_path("modes.yaml")
        >>> resolve_config_path("prompt_templates/system.jinja2")
    """
    return get_package_root() / "config" / relative_path


__all__ = ["get_package_root", "resolve_config_path"]
