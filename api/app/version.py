from __future__ import annotations

import tomllib
from importlib import metadata
from pathlib import Path


_DIST_NAME = "fleet-status-tracker"


def get_version() -> str:
    """Return the repo version.

    Prefer the installed distribution metadata; fall back to reading
    pyproject.toml when running from a source checkout.
    """

    try:
        return metadata.version(_DIST_NAME)
    except metadata.PackageNotFoundError:
        pass

    repo_root = Path(__file__).resolve().parents[2]
    pyproject = repo_root / "pyproject.toml"
    if not pyproject.exists():
        return "0.0.0"

    try:
        data = tomllib.loads(pyproject.read_text("utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"
    project = data.get("project") or {}
    v = project.get("version")
    return str(v) if v else "0.0.0"


__version__ = get_version()
