"""Shared test fixtures for backup_mirror."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

import pytest

from backup_mirror import LOGGER_NAME

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _reset_logger() -> Iterator[None]:
    """Undo setup_logger() so caplog keeps seeing records in later tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    work = tmp_path / "work"
    backup = tmp_path / "backup"
    work.mkdir()
    backup.mkdir()
    return work, backup


def write(path: Path, text: str, mtime: int | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def tree(root: Path) -> dict[str, str]:
    """Relative posix path -> text for every file under root."""
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in root.rglob("*")
        if p.is_file()
    }
