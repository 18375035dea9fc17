"""Scenario tests for the sync orchestrator."""

import os
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable
from unittest.mock import patch

import pytest

from twinsync.config.models import CONTROL_DIR_NAME, ControlPaths, Endpoint, Mode, Session
from twinsync.core.engine import PassState, SyncOrchestrator
from twinsync.core.errors import LockHeld, TransferEngineFailure
from twinsync.core.protect import CONTROL_DIR_PATTERN

from conftest import FakeSyncEngine


def control(root: Path) -> Path:
    return root / CONTROL_DIR_NAME


def read_state(root: Path) -> dict:
    """Bytes of each snapshot file, None where the file is absent."""
    state: dict = {}
    for name in ("previous", "current", "delta"):
        path = control(root) / name
        state[name] = path.read_bytes() if path.exists() else None
    return state


class TestModeResolution:
    """Mirror on first pass, FullDuplex once both endpoints are initialized."""

    def test_first_pass_is_push_only_mirror(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
        secondary: Path,
    ) -> None:
        result = orchestrator.run(make_session())

        assert result.mode is Mode.MIRROR
        assert orchestrator.transitions == [
            PassState.IDLE, PassState.LOCKED, PassState.PUSHED, PassState.FINALIZED,
        ]
        assert len(fake_engine.calls) == 1
        push = fake_engine.calls[0]
        assert push["source"].path == str(primary)
        assert push["dest"].path == str(secondary)
        assert push["delete"] is True
        assert push["excludes"] == [CONTROL_DIR_PATTERN]
        assert (control(primary) / "settings").exists()
        assert (control(secondary) / "settings").exists()

    def test_second_pass_upgrades_to_fullduplex(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        first = make_session(now=time.time())
        orchestrator.run(first)
        edited = first.started_at + 5
        (primary / "a.txt").write_text("edited")
        os.utime(primary / "a.txt", (edited, edited))

        result = orchestrator.run(make_session(now=first.started_at + 10))

        assert result.mode is Mode.FULLDUPLEX
        assert orchestrator.transitions == [
            PassState.IDLE, PassState.LOCKED, PassState.PULLED, PassState.PUSHED, PassState.FINALIZED,
        ]
        pull, push = fake_engine.calls[1:]
        assert pull["source"].path.endswith("secondary")
        assert pull["delete"] is False
        assert pull["protected_lines"] == [CONTROL_DIR_PATTERN, "/a.txt"]
        assert push["delete"] is True
        assert result.delta.is_empty()

    def test_secondary_only_initialized_stays_mirror(
        self,
        orchestrator: SyncOrchestrator,
        make_session: Callable[..., Session],
        secondary: Path,
    ) -> None:
        (control(secondary)).mkdir()
        (control(secondary) / "settings").write_text("enabled true\n")
        assert orchestrator.run(make_session()).mode is Mode.MIRROR

    def test_settings_mode_requires_override(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        control(primary).mkdir()
        (control(primary) / "settings").write_text("enabled true\nmode secondary\n")

        assert orchestrator.run(make_session()).mode is Mode.MIRROR
        result = orchestrator.run(make_session(allow_settings_override=True))

        assert result.mode is Mode.SECONDARY
        pull, push = fake_engine.calls[1:]
        assert pull["delete"] is True
        assert pull["excludes"] == [CONTROL_DIR_PATTERN]
        assert pull["exclude_from"] is None
        assert push["delete"] is False

    def test_primary_mode_directions(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        control(primary).mkdir()
        (control(primary) / "settings").write_text("mode primary\n")

        result = orchestrator.run(make_session(allow_settings_override=True))

        assert result.mode is Mode.PRIMARY
        pull, push = fake_engine.calls
        assert pull["delete"] is False
        assert push["delete"] is True

    def test_disabled_tree_is_skipped(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        control(primary).mkdir()
        (control(primary) / "settings").write_text("enabled false\n")

        result = orchestrator.run(make_session())

        assert result.skipped
        assert fake_engine.calls == []
        assert orchestrator.transitions == [PassState.IDLE]


class TestPassProperties:
    """Idempotence, delta shielding and history."""

    def test_unchanged_tree_gives_empty_delta_and_minimal_protection(
        self,
        orchestrator: SyncOrchestrator,
        make_session: Callable[..., Session],
    ) -> None:
        now = time.time()
        orchestrator.run(make_session(now=now))
        orchestrator.run(make_session(now=now + 1))

        result = orchestrator.run(make_session(now=now + 2))

        assert result.mode is Mode.FULLDUPLEX
        assert result.delta.is_empty()
        assert result.protected == [CONTROL_DIR_PATTERN]

    def test_local_changes_are_shielded_from_pull(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        now = time.time()
        orchestrator.run(make_session(now=now))
        orchestrator.run(make_session(now=now + 1))
        (primary / "a.txt").unlink()
        (primary / "c.txt").write_text("c")
        os.utime(primary / "c.txt", (now - 100, now - 100))

        result = orchestrator.run(make_session(now=now + 2))

        assert result.delta.removed == ["a.txt"]
        assert result.delta.added == ["c.txt"]
        pull = fake_engine.calls[-2]
        assert "/a.txt" in pull["protected_lines"]
        assert "/c.txt" in pull["protected_lines"]

    def test_committed_pass_writes_history_and_marker(
        self,
        orchestrator: SyncOrchestrator,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        now = time.time()
        orchestrator.run(make_session(now=now))
        second = make_session(now=now + 1)

        result = orchestrator.run(second)

        assert result.history_dir == control(primary) / "history" / second.timestamp
        assert (result.history_dir / "previous").read_text() == "a.txt\ndocs\ndocs/b.txt\n"
        assert (result.history_dir / "delta").read_text() == ""
        assert float((control(primary) / "last_run").read_text()) == pytest.approx(now + 1)

    def test_backup_dir_is_scoped_to_pass(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
    ) -> None:
        session = make_session()
        orchestrator.run(session)
        assert fake_engine.calls[0]["backup_dir"] == f".twinsync/backup/{session.timestamp}"


class TestDryRun:
    """Dry runs must not consume a pass."""

    def test_dry_run_leaves_state_untouched(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        now = time.time()
        orchestrator.run(make_session(now=now))
        paths = ControlPaths.for_endpoint(make_session().primary)
        current_before = Path(paths.current).read_bytes()
        marker_before = Path(paths.last_run).read_bytes()
        (primary / "new.txt").write_text("n")

        dry = make_session(now=now + 1, dry_run=True)
        result = orchestrator.run(dry)

        assert result.delta.added == ["new.txt"]
        assert Path(paths.current).read_bytes() == current_before
        assert Path(paths.last_run).read_bytes() == marker_before
        assert not (control(primary) / "history" / dry.timestamp).exists()
        assert all(call["dry_run"] for call in fake_engine.calls[1:])
        assert orchestrator.transitions[-1] is PassState.FINALIZED

    def test_dry_run_does_not_initialize_secondary(
        self,
        orchestrator: SyncOrchestrator,
        make_session: Callable[..., Session],
        secondary: Path,
    ) -> None:
        orchestrator.run(make_session(dry_run=True))
        assert not (control(secondary) / "settings").exists()

    def test_failed_dry_run_restores_state(
        self,
        orchestrator: SyncOrchestrator,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        now = time.time()
        orchestrator.run(make_session(now=now))
        orchestrator.run(make_session(now=now + 1))
        state_before = read_state(primary)
        marker_before = (control(primary) / "last_run").read_bytes()
        (primary / "a.txt").unlink()

        failing = SyncOrchestrator(
            sync_engine=FakeSyncEngine(fail_with=TransferEngineFailure(["rsync"], 12, "broken pipe"))
        )
        with pytest.raises(TransferEngineFailure):
            failing.run(make_session(now=now + 2, dry_run=True))

        assert read_state(primary) == state_before
        assert (control(primary) / "last_run").read_bytes() == marker_before
        assert not (control(primary) / "lock").exists()

        result = orchestrator.run(make_session(now=now + 3))
        assert result.delta.removed == ["a.txt"]

    def test_failed_committed_pass_keeps_rotated_state(
        self,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        failing = SyncOrchestrator(
            sync_engine=FakeSyncEngine(fail_with=TransferEngineFailure(["rsync"], 12, "broken pipe"))
        )

        with pytest.raises(TransferEngineFailure):
            failing.run(make_session())

        assert read_state(primary)["current"] == b"a.txt\ndocs\ndocs/b.txt\n"


class TestFailures:
    """Lock contention and transfer failures."""

    def test_held_lock_fails_fast(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        orchestrator.run(make_session())
        current_before = (control(primary) / "current").read_bytes()
        (control(primary) / "lock").mkdir()

        with pytest.raises(LockHeld):
            orchestrator.run(make_session())

        assert len(fake_engine.calls) == 1
        assert (control(primary) / "current").read_bytes() == current_before
        assert (control(primary) / "lock").is_dir()

    def test_transfer_failure_releases_lock_and_keeps_marker(
        self,
        make_session: Callable[..., Session],
        primary: Path,
    ) -> None:
        failing = FakeSyncEngine(fail_with=TransferEngineFailure(["rsync"], 12, "broken pipe"))
        orchestrator = SyncOrchestrator(sync_engine=failing)

        with pytest.raises(TransferEngineFailure):
            orchestrator.run(make_session())

        assert not (control(primary) / "lock").exists()
        assert not (control(primary) / "last_run").exists()
        assert orchestrator.state is PassState.LOCKED


class TestCvsignoreSync:
    """The -c option copies ~/.cvsignore to the secondary host."""

    def test_local_secondary_skips_copy(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
    ) -> None:
        orchestrator.run(make_session(allow_cvsignore_sync=True))
        assert fake_engine.copies == []

    def test_remote_secondary_gets_ignore_file(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        home = tmp_path / "home"
        home.mkdir()
        (home / ".cvsignore").write_text("*.o\n")
        monkeypatch.setenv("HOME", str(home))
        session = replace(
            make_session(allow_cvsignore_sync=True),
            secondary=Endpoint(path="/srv/x", host="backup"),
        )

        orchestrator.sync_cvsignore(session)

        assert fake_engine.copies == [(str(home / ".cvsignore"), "backup:.cvsignore")]

    def test_held_lock_leaves_secondary_host_untouched(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        home = tmp_path / "home"
        home.mkdir()
        (home / ".cvsignore").write_text("*.o\n")
        monkeypatch.setenv("HOME", str(home))
        (control(primary) / "lock").mkdir(parents=True)
        session = replace(
            make_session(allow_cvsignore_sync=True),
            secondary=Endpoint(path="/srv/x", host="backup"),
        )

        with patch.object(orchestrator.state_tracker, "is_initialized", return_value=True):
            with pytest.raises(LockHeld):
                orchestrator.run(session)

        assert fake_engine.copies == []
        assert fake_engine.calls == []

    def test_ignore_file_is_copied_while_locked(
        self,
        orchestrator: SyncOrchestrator,
        fake_engine: FakeSyncEngine,
        make_session: Callable[..., Session],
        primary: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        home = tmp_path / "home"
        home.mkdir()
        (home / ".cvsignore").write_text("*.o\n")
        monkeypatch.setenv("HOME", str(home))
        session = replace(
            make_session(allow_cvsignore_sync=True),
            secondary=Endpoint(path="/srv/x", host="backup"),
        )
        lock_seen = []

        def copy_file(source: str, dest: str, remote: bool = True) -> dict:
            lock_seen.append((control(primary) / "lock").is_dir())
            return {"success": True, "returncode": 0, "output": "", "error": ""}

        monkeypatch.setattr(fake_engine, "copy_file", copy_file)
        orchestrator.state_tracker.initialize(session.primary)
        with patch.object(orchestrator.state_tracker, "is_initialized", return_value=True):
            orchestrator.run(session)

        assert lock_seen == [True]
