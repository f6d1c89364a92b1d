"""Tests for WorkspaceManager: allocation, cleanup and stale sweeps."""

import os
import time
from pathlib import Path

from codejudge.languages import CPP, PYTHON
from codejudge.workspace import WORKSPACE_PREFIX, WorkspaceManager


class TestCreateAndDestroy:
    def test_create_allocates_unique_directories(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        first = manager.create_workspace(PYTHON)
        second = manager.create_workspace(PYTHON)

        assert first.id != second.id
        assert first.root_path.is_dir()
        assert first.root_path.parent == scratch_root
        assert first.root_path.name.startswith(WORKSPACE_PREFIX)
        assert first.source_file_path == first.root_path / "solution.py"
        assert first.artifact_path is None

    def test_compiled_language_gets_artifact_path(self, scratch_root: Path) -> None:
        workspace = WorkspaceManager(scratch_root).create_workspace(CPP)
        assert workspace.artifact_path == workspace.root_path / "solution"

    def test_write_source_overwrites(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        workspace = manager.create_workspace(PYTHON)
        manager.write_source(workspace, "print('a')")
        manager.write_source(workspace, "print('ü')")
        assert workspace.source_file_path.read_text(encoding="utf-8") == "print('ü')"

    def test_destroy_removes_everything(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        workspace = manager.create_workspace(PYTHON)
        manager.write_source(workspace, "x = 1")
        (workspace.root_path / "nested").mkdir()
        (workspace.root_path / "nested" / "file").write_text("data")

        manager.destroy(workspace)
        assert not workspace.root_path.exists()

    def test_destroy_twice_does_not_raise(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        workspace = manager.create_workspace(PYTHON)
        manager.destroy(workspace)
        manager.destroy(workspace)


class TestSweepStale:
    @staticmethod
    def _age(path: Path, seconds: float) -> None:
        past = time.time() - seconds
        os.utime(path, (past, past))

    @staticmethod
    def _leak(scratch_root: Path) -> Path:
        # Left behind by a manager that never destroyed it, e.g. a crashed worker
        return WorkspaceManager(scratch_root).create_workspace(PYTHON).root_path

    def test_sweeps_only_old_entries(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        old = self._leak(scratch_root)
        fresh = self._leak(scratch_root)
        stray = scratch_root / "leftover.txt"
        stray.write_text("junk")
        self._age(old, 3600)
        self._age(stray, 3600)

        removed = manager.sweep_stale(60 * 1000)

        assert removed == 2
        assert not old.exists()
        assert not stray.exists()
        assert fresh.exists()

    def test_default_age_from_constructor(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root, max_age_ms=1000)
        self._age(self._leak(scratch_root), 10)
        assert manager.sweep_stale() == 1

    def test_opportunistic_sweep(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root, sweep_every=3, max_age_ms=1000)
        leaked = self._leak(scratch_root)
        self._age(leaked, 10)

        manager.create_workspace(PYTHON)
        manager.create_workspace(PYTHON)
        assert leaked.exists()
        manager.create_workspace(PYTHON)  # third creation triggers a sweep
        assert not leaked.exists()

    def test_live_workspace_survives_sweep(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        live = manager.create_workspace(PYTHON)
        manager.write_source(live, "print(1)")
        self._age(live.root_path, 3600)

        assert manager.sweep_stale(0) == 0
        assert live.source_file_path.exists()

        manager.destroy(live)
        assert not manager.is_active(live.root_path.name)

    def test_destroyed_workspace_is_forgotten(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        workspace = manager.create_workspace(PYTHON)
        manager.destroy(workspace)
        # Recreated by something else under the same name, no longer ours
        workspace.root_path.mkdir()
        self._age(workspace.root_path, 3600)
        assert manager.sweep_stale(0) == 1

    def test_touch_refreshes_age(self, scratch_root: Path) -> None:
        manager = WorkspaceManager(scratch_root)
        workspace = manager.create_workspace(PYTHON)
        self._age(workspace.root_path, 3600)
        manager.touch(workspace)
        # A second manager sharing the root sees it as fresh
        assert WorkspaceManager(scratch_root).sweep_stale(60 * 1000) == 0
        assert workspace.root_path.exists()

    def test_missing_root_is_not_an_error(self, tmp_path: Path) -> None:
        manager = WorkspaceManager(tmp_path / "root")
        (tmp_path / "root").rmdir()
        assert manager.sweep_stale(0) == 0
