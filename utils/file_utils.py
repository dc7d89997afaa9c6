"""File utilities."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable

from core.config import settings
from core.logger import logger

TEX_EXTENSIONS = (".tex",)


def ensure_directories() -> None:
    """Create required directories."""
    for path in (settings.data_dir, settings.output_dir):
        path.mkdir(parents=True, exist_ok=True)
        logger.debug("Ensured directory: %s", path)


def read_text(path: Path) -> str:
    """Read a UTF-8 source file; undecodable bytes are replaced."""
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"No such file: {path}")
    return path.read_text(encoding="utf-8", errors="replace")


def list_files(directory: Path, extensions: Iterable[str]) -> list[Path]:
    """List files in directory with given extensions."""
    if not directory.exists():
        return []
    extensions = tuple(ext.lower() for ext in extensions)
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in extensions)


def collect_tex_files(paths: Iterable[str | Path]) -> list[Path]:
    """Expand files and directories on the command line into .tex files."""
    found: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            found.extend(list_files(path, TEX_EXTENSIONS))
        elif path.is_file():
            found.append(path)
        else:
            logger.warning("Skipping missing path: %s", path)
    return found
