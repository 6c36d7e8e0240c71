from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Awaitable, Callable, Generic, TypeVar

from pydantic import ValidationError

from common.ids import now_ms
from common.jsonio import read_json_object, remove_file, write_json_atomic
from llamachat.backend import BackendClient
from llamachat.errors import BackendError, PersistenceError
from llamachat.models import CompletionRecord, LocalBackup
from llamachat.session import ChatSession

logger = logging.getLogger(__name__)

P = TypeVar("P")


class LocalBackupStore:
    """Crash-recovery snapshots, one JSON file per completion."""

    def __init__(self, backup_dir: str | Path):
        self.backup_dir = Path(backup_dir)

    def _path(self, completion_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", str(completion_id))
        return self.backup_dir / f"completion-{safe}.json"

    def read(self, completion_id: str) -> LocalBackup | None:
        data = read_json_object(self._path(completion_id))
        if not data:
            return None
        try:
            return LocalBackup.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable backup for {completion_id}: {e}")
            return None

    def write(self, backup: LocalBackup) -> None:
        write_json_atomic(self._path(backup.id), backup.to_wire())

    def clear(self, completion_id: str, *, not_newer_than: int | None = None) -> bool:
        if not_newer_than is not None:
            current = self.read(completion_id)
            if current is not None and current.effective_updated_at > not_newer_than:
                return False
        return remove_file(self._path(completion_id))


class DurableWriter(Generic[P]):
    """Two ways into one sink: coalesced ``schedule_write`` and ``write_now``.

    A scheduled write waits ``delay`` seconds; scheduling again for the same
    key restarts the wait and replaces the payload. ``write_now`` drops any
    pending scheduled write for the key and writes immediately. A write that
    has already started is never cancelled.
    """

    def __init__(self, sink: Callable[[str, P], Awaitable[None]], delay: float):
        self._sink = sink
        self.delay = delay
        self._timers: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    @property
    def pending_keys(self) -> list[str]:
        return list(self._timers)

    def schedule_write(self, key: str, payload: P) -> None:
        self.cancel_pending(key)
        task = asyncio.get_running_loop().create_task(self._delayed(key, payload))
        self._timers[key] = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _delayed(self, key: str, payload: P) -> None:
        await asyncio.sleep(self.delay)
        self._timers.pop(key, None)
        await self._sink(key, payload)

    async def write_now(self, key: str, payload: P) -> None:
        self.cancel_pending(key)
        await self._sink(key, payload)

    def cancel_pending(self, key: str | None = None) -> None:
        keys = [key] if key is not None else list(self._timers)
        for k in keys:
            task = self._timers.pop(k, None)
            if task is not None:
                task.cancel()

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


class PersistenceReconciler:
    def __init__(
        self,
        session: ChatSession,
        backend: BackendClient,
        backups: LocalBackupStore,
    ):
        self.session = session
        self.backend = backend
        self.backups = backups
        self.writer: DurableWriter[str] = DurableWriter(self._save_safely, session.config.save_debounce_s)
        self.last_saved_at = 0
        self._last_save_error = ""
        session.on_save = self.save

    def _write_backup(self, reason: str) -> None:
        completion_id = self.session.completion_id
        if not completion_id:
            return
        payload = self.session.build_payload()
        backup = LocalBackup(id=completion_id, updated_at=payload.updated_at, reason=reason, payload=payload)
        try:
            self.backups.write(backup)
        except OSError as e:
            logger.warning(f"Local backup for {completion_id} failed: {e}")

    def _clear_backup(self, completion_id: str, not_newer_than: int | None = None) -> None:
        try:
            self.backups.clear(completion_id, not_newer_than=not_newer_than)
        except OSError as e:
            logger.warning(f"Could not remove local backup for {completion_id}: {e}")

    def save(self, reason: str = "") -> None:
        """Back up locally now and schedule a debounced backend save."""
        completion_id = self.session.completion_id
        if not completion_id:
            return
        self._write_backup(reason)
        self.writer.schedule_write(completion_id, reason)

    async def flush(self, reason: str = "") -> None:
        completion_id = self.session.completion_id
        if not completion_id:
            return
        self._write_backup(reason)
        await self.writer.write_now(completion_id, reason)

    async def _save_safely(self, completion_id: str, reason: str) -> None:
        if completion_id != self.session.completion_id:
            return
        try:
            await self._save(reason)
        except PersistenceError as e:
            error_text = str(e)
            self.session.set_save_hint(f"save failed: {error_text}")
            logger.warning(f"Save of completion {completion_id} failed: {error_text}")
            if self._last_save_error != error_text:
                self._last_save_error = error_text
                self.session.store.add_system_log(f"save failed: {error_text}", no_context=True)

    async def _save(self, reason: str) -> None:
        record = self.session.build_payload()
        self.session.set_save_hint("saving…")
        try:
            await self.backend.save_completion(record)
        except BackendError as e:
            raise PersistenceError(str(e)) from e
        self.last_saved_at = now_ms()
        label = f"saved ({reason})" if reason else "saved"
        self.session.set_save_hint(f"{label} · {time.strftime('%H:%M:%S')}")
        self._clear_backup(str(record.id), not_newer_than=record.updated_at)
        logger.debug(f"Saved completion {record.id} ({reason or 'no reason'})")

    async def load(self, completion_id: str) -> CompletionRecord:
        """Fetch the server copy, apply it, then let a newer local backup win."""
        record = await self.backend.get_completion(completion_id)
        self.session.completion_id = str(completion_id)
        self.session.apply_payload(record)
        await self.reconcile(str(completion_id), record.updated_at)
        return record

    async def reconcile(self, completion_id: str, server_updated_at: int) -> bool:
        backup = self.backups.read(completion_id)
        if backup is None:
            return False
        local_updated_at = backup.effective_updated_at
        server_ms = int(server_updated_at or 0)
        if local_updated_at > server_ms:
            logger.info(
                f"Restoring completion {completion_id} from local backup "
                f"(local={local_updated_at} > server={server_ms}, reason={backup.reason!r})"
            )
            self.session.apply_payload(backup.payload)
            self.session.set_status("restored unsaved changes from local backup")
            await self.flush("restore")
            return True
        logger.debug(f"Discarding stale local backup for {completion_id}")
        self._clear_backup(completion_id)
        return False

    async def aclose(self) -> None:
        self.writer.cancel_pending()
        await self.writer.wait_idle()
