from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from untilgreen.logs import PACKAGE_LOGGER


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "untilgreen-home"
    monkeypatch.setenv("UNTILGREEN_HOME", str(home))
    return home


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    level = package_logger.level
    propagate = package_logger.propagate
    yield
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(level)
    package_logger.propagate = propagate
