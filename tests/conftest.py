"""Shared fixtures for twinsync tests."""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import structlog

from twinsync.config.models import Endpoint, Session, SessionOptions
from twinsync.core.engine import SyncOrchestrator
from twinsync.core.locator import build_session


@pytest.fixture(autouse=True)
def reset_structlog():
    """CLI tests reconfigure structlog to a runner-owned stream; undo that."""
    yield
    structlog.reset_defaults()


class FakeSyncEngine:
    """Records rsync invocations instead of running them."""

    def __init__(self, fail_with: Optional[Exception] = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.copies: list[tuple[str, str]] = []
        self.fail_with = fail_with

    def mirror(self, source: Endpoint, dest: Endpoint, **kwargs: Any) -> dict:
        call = {"source": source, "dest": dest, **kwargs}
        exclude_from = kwargs.get("exclude_from")
        if exclude_from is not None:
            call["protected_lines"] = Path(exclude_from).read_text().splitlines()
        self.calls.append(call)
        if self.fail_with is not None:
            raise self.fail_with
        return {"success": True, "returncode": 0, "output": "", "error": ""}

    def copy_file(self, source: str, dest: str, remote: bool = True) -> dict:
        self.copies.append((source, dest))
        return {"success": True, "returncode": 0, "output": "", "error": ""}


@pytest.fixture
def primary(tmp_path: Path) -> Path:
    """Primary tree with a couple of files."""
    root = tmp_path / "primary"
    (root / "docs").mkdir(parents=True)
    (root / "a.txt").write_text("a")
    (root / "docs" / "b.txt").write_text("b")
    age_tree(root, time.time() - 3600)
    return root


@pytest.fixture
def secondary(tmp_path: Path) -> Path:
    root = tmp_path / "secondary"
    root.mkdir()
    return root


@pytest.fixture
def fake_engine() -> FakeSyncEngine:
    return FakeSyncEngine()


@pytest.fixture
def orchestrator(fake_engine: FakeSyncEngine) -> SyncOrchestrator:
    return SyncOrchestrator(sync_engine=fake_engine)


@pytest.fixture
def make_session(primary: Path, secondary: Path) -> Callable[..., Session]:
    """Build a local-to-local session; `now` defaults to the current time."""

    def _make(now: Optional[float] = None, **options: Any) -> Session:
        return build_session(str(primary), str(secondary), SessionOptions(**options), now=now)

    return _make


def age_tree(root: Path, mtime: float) -> None:
    """Set every entry's mtime under root (control dir included) to mtime."""
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            os.utime(os.path.join(dirpath, name), (mtime, mtime), follow_symlinks=False)
