"""
Run Store - durable storage for Run records.

The scheduler checkpoints the Run after every state transition, so the
stored record always describes where the run is: its frontier, per-node
results, and (when suspended) which node is waiting. Nothing else has to
survive a restart for a suspended run to be resumed.

Two backends:
  InMemoryRunStore   tests and single-process embedding
  FileRunStore       {base_path}/runs/{run_id}.json, atomic temp+rename writes

Writes are guarded twice: a per-run asyncio.Lock serialises writers in one
process, and an optimistic ``version`` check rejects a checkpoint built
from a stale copy of the run (e.g. a second resume racing the first).
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from flowengine.errors import ConcurrentModificationError
from flowengine.schemas.run import Run, RunStatus, RunSummary
from flowengine.utils.io import atomic_write

logger = logging.getLogger(__name__)


class RunStore(ABC):
    """Storage interface the scheduler depends on."""

    def __init__(self) -> None:
        self._run_locks: dict[str, asyncio.Lock] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}

    # -- backend hooks ---------------------------------------------------

    @abstractmethod
    async def _read(self, run_id: str) -> Run | None:
        """Return the stored run, or None."""

    @abstractmethod
    async def _write(self, run: Run) -> None:
        """Persist ``run`` (already versioned)."""

    @abstractmethod
    async def _scan(self) -> Iterable[Run]:
        """Return every stored run."""

    @abstractmethod
    async def delete(self, run_id: str) -> bool:
        """Delete a run. Returns True if it existed."""

    # -- public API ------------------------------------------------------

    def generate_run_id(self) -> str:
        return f"run_{uuid.uuid4().hex}"

    def lock(self, run_id: str) -> asyncio.Lock:
        """
        Per-run lock for read-modify-write sequences (resume, cancel).

        Usage:
            async with store.lock(run_id):
                run = await store.load(run_id)
                ...
                await store.checkpoint(run)
        """
        return self._run_locks.setdefault(run_id, asyncio.Lock())

    async def create(
        self,
        graph_id: str,
        input: Any = None,
        variables: dict[str, Any] | None = None,
    ) -> Run:
        """Create and persist a new PENDING run."""
        run = Run(
            id=self.generate_run_id(),
            graph_id=graph_id,
            status=RunStatus.PENDING,
            input=input,
            variables=dict(variables or {}),
        )
        await self.checkpoint(run)
        logger.debug(f"Created run {run.id} for graph {graph_id}")
        return run

    async def load(self, run_id: str) -> Run | None:
        """Load a run by id (None if unknown)."""
        return await self._read(run_id)

    async def checkpoint(self, run: Run) -> Run:
        """
        Persist ``run`` and bump its version in place.

        Raises:
            ConcurrentModificationError: if the stored copy has moved on since
                ``run`` was loaded, or is already terminal.
        """
        async with self._write_locks.setdefault(run.id, asyncio.Lock()):
            stored = await self._read(run.id)
            if stored is not None:
                if stored.version != run.version:
                    raise ConcurrentModificationError(
                        f"Run {run.id} was modified concurrently "
                        f"(stored version {stored.version}, writing {run.version})"
                    )
                if stored.status.is_terminal:
                    raise ConcurrentModificationError(
                        f"Run {run.id} is already {stored.status} and cannot change"
                    )

            run.version += 1
            run.updated_at = datetime.now(UTC)
            try:
                await self._write(run)
            except BaseException:
                run.version -= 1
                raise
        return run

    async def list_runs(
        self,
        graph_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[RunSummary]:
        """List runs, most recently updated first."""
        runs = [
            run
            for run in await self._scan()
            if (graph_id is None or run.graph_id == graph_id)
            and (status is None or run.status == status)
        ]
        runs.sort(key=lambda r: r.updated_at, reverse=True)
        return [run.summary() for run in runs[:limit]]

    async def list_suspended(self, graph_id: str | None = None) -> list[Run]:
        """Runs waiting on an external decision, oldest first."""
        runs = [
            run
            for run in await self._scan()
            if run.status == RunStatus.SUSPENDED
            and (graph_id is None or run.graph_id == graph_id)
        ]
        runs.sort(key=lambda r: r.updated_at)
        return runs


class InMemoryRunStore(RunStore):
    """
    Process-local store.

    Runs are held as serialized JSON so a loaded Run is always an independent
    copy, exactly as it would be when read back from disk.
    """

    def __init__(self) -> None:
        super().__init__()
        self._runs: dict[str, str] = {}

    async def _read(self, run_id: str) -> Run | None:
        data = self._runs.get(run_id)
        return Run.model_validate_json(data) if data is not None else None

    async def _write(self, run: Run) -> None:
        self._runs[run.id] = run.model_dump_json()

    async def _scan(self) -> list[Run]:
        return [Run.model_validate_json(data) for data in self._runs.values()]

    async def delete(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None


class FileRunStore(RunStore):
    """
    JSON-file store.

    Layout:
        {base_path}/runs/{run_id}.json
    """

    def __init__(self, base_path: Path):
        super().__init__()
        self.base_path = Path(base_path)
        self.runs_dir = self.base_path / "runs"

    def get_run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    async def _read(self, run_id: str) -> Run | None:
        def _load():
            path = self.get_run_path(run_id)
            if not path.exists():
                return None
            return Run.model_validate_json(path.read_text(encoding="utf-8"))

        return await asyncio.to_thread(_load)

    async def _write(self, run: Run) -> None:
        def _save():
            self.runs_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(self.get_run_path(run.id)) as f:
                f.write(run.model_dump_json(indent=2))

        await asyncio.to_thread(_save)
        logger.debug(f"Checkpointed run {run.id} (v{run.version}, {run.status})")

    async def _scan(self) -> list[Run]:
        def _load_all():
            runs = []
            if not self.runs_dir.exists():
                return runs
            for path in self.runs_dir.glob("*.json"):
                try:
                    runs.append(Run.model_validate_json(path.read_text(encoding="utf-8")))
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to load {path}: {e}")
            return runs

        return await asyncio.to_thread(_load_all)

    async def delete(self, run_id: str) -> bool:
        def _delete():
            path = self.get_run_path(run_id)
            if not path.exists():
                return False
            path.unlink()
            logger.info(f"Deleted run {run_id}")
            return True

        return await asyncio.to_thread(_delete)
