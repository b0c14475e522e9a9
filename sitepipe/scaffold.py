"""Create a new site by copying an existing one under the works directory."""

from __future__ import annotations

import shutil
from pathlib import Path

from .config import DEFAULT_WORKS_DIR
from .logging import get_logger


def clone_site(
    project_root: Path,
    origin: str | None,
    name: str | None,
    *,
    works_dir: str | Path = DEFAULT_WORKS_DIR,
) -> Path:
    """Copy ``<works_dir>/<origin>`` to ``<works_dir>/<name>`` and return the new directory.

    A relative ``works_dir`` is taken from ``project_root``.
    """
    logger = get_logger("scaffold")
    if not origin:
        raise ValueError("An origin site name is required")
    if not name:
        raise ValueError("A name for the new site is required")
    for value in (origin, name):
        if "/" in value or "\\" in value or value in {".", ".."}:
            raise ValueError(f"Invalid site name: {value!r}")

    works = Path(project_root) / works_dir
    source = works / origin
    destination = works / name
    if not source.is_dir():
        raise FileNotFoundError(f"Origin site not found: {source}")
    if destination.exists():
        raise FileExistsError(f"Site already exists: {destination}")

    shutil.copytree(source, destination)
    logger.info("Created site %s from %s", name, origin)
    return destination


__all__ = ["clone_site"]
