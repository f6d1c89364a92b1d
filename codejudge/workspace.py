import logging
import os
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from codejudge.exceptions import ResourceError
from codejudge.languages import LanguageConfig

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "ws_"


@dataclass(frozen=True)
class Workspace:
    id: str
    root_path: Path
    source_file_path: Path
    artifact_path: Optional[Path] = None


class WorkspaceManager(object):
    """Per-execution scratch directories under one shared root.

    Workspace ids are random UUIDs, so concurrent executions never touch the
    same path and no locking is needed between them. Workspaces handed out
    and not yet destroyed are never swept, however long they live.
    """

    def __init__(self, root: Path, sweep_every: int = 0, max_age_ms: int = 10 * 60 * 1000):
        self.root = Path(root)
        self.sweep_every = sweep_every
        self.max_age_ms = max_age_ms
        self._created = 0
        self._active = set()
        self._lock = threading.Lock()
        self.ensure_root()

    def ensure_root(self):
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ResourceError(f'failed to init scratch root: {e}') from e

    def create_workspace(self, language: LanguageConfig) -> Workspace:
        self._maybe_sweep()
        workspace_id = uuid.uuid4().hex
        root_path = self.root / f'{WORKSPACE_PREFIX}{workspace_id}'
        with self._lock:
            self._active.add(root_path.name)
        try:
            root_path.mkdir(parents=True)
            os.chmod(root_path, 0o711)
        except OSError as e:
            self._release(root_path)
            raise ResourceError(f'failed to init workspace dir: {e}') from e
        artifact_path = root_path / language.artifact_name if language.artifact_name else None
        return Workspace(
            id=workspace_id,
            root_path=root_path,
            source_file_path=root_path / language.source_file_name,
            artifact_path=artifact_path,
        )

    def write_source(self, workspace: Workspace, content: str):
        try:
            workspace.source_file_path.write_text(content, encoding='utf-8')
        except OSError as e:
            raise ResourceError(f'failed to write source file: {e}') from e

    def touch(self, workspace: Workspace):
        """Refresh the mtime so sweeps run by other processes see the workspace as in use."""
        try:
            os.utime(workspace.root_path)
        except OSError as e:
            logger.warning(f'[Workspace {workspace.id}] Failed to touch workspace dir: {e}')

    def is_active(self, name: str) -> bool:
        with self._lock:
            return name in self._active

    def destroy(self, workspace: Workspace):
        # Never raises: a cleanup failure must not replace a computed verdict.
        try:
            shutil.rmtree(workspace.root_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f'[Workspace {workspace.id}] Failed to clean workspace dir: {e}')
        finally:
            self._release(workspace.root_path)

    def _release(self, root_path: Path):
        with self._lock:
            self._active.discard(root_path.name)

    def sweep_stale(self, max_age_ms: Optional[int] = None) -> int:
        """Delete every inactive entry of the root older than ``max_age_ms``. Returns the count removed."""
        if max_age_ms is None:
            max_age_ms = self.max_age_ms
        now = time.time()
        removed = 0
        try:
            entries = list(self.root.iterdir())
        except OSError as e:
            logger.warning(f'[Workspace] Sweep failed to list {self.root}: {e}')
            return 0

        for entry in entries:
            if self.is_active(entry.name):
                continue
            try:
                age_ms = (now - entry.stat().st_mtime) * 1000
                if age_ms <= max_age_ms:
                    continue
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f'[Workspace] Sweep failed to remove {entry.name}: {e}')

        if removed:
            logger.info(f'[Workspace] Swept {removed} stale entries from {self.root}')
        return removed

    def _maybe_sweep(self):
        if self.sweep_every <= 0:
            return
        with self._lock:
            self._created += 1
            if self._created < self.sweep_every:
                return
            self._created = 0
        self.sweep_stale()
