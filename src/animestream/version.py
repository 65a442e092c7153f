"""Version management for animestream."""

import tomllib
from pathlib import Path


def get_version() -> str:
    """Get the current version from pyproject.toml."""
    project_root = Path(__file__).parent.parent.parent
    pyproject_path = project_root / "pyproject.toml"

    try:
        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
            return data["project"]["version"]
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        # Installed without the source tree
        return "0.0.0"


__version__ = get_version()
