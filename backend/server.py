"""
Scene Server - wires the store, collaborators, session registry and
synchronizer into one explicitly owned object graph, and runs the
background autosave.
"""

import asyncio
import sys
from typing import Optional

from config import Settings
from errors import PersistenceFailure
from logger import setup_logger
from persistence import SnapshotStore
from scene_state import SceneState
from scene_store import SceneStore
from sessions import SessionRegistry
from synchronizer import StateSynchronizer
from uploads import ImageUploads

logger = setup_logger("scene_server")


class SceneServer:
    """Owns the one SceneState and every component that reads or mutates it."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.persistence = SnapshotStore(self.settings.data_dir)
        self.uploads = ImageUploads(self.settings.uploads_dir, self.settings.max_upload_bytes)
        self.store = SceneStore(
            state=self.persistence.load() or SceneState(),
            persistence=self.persistence,
            position_policy=self.settings.position_policy,
        )
        self.registry = SessionRegistry()
        self.sync = StateSynchronizer(self.store, self.registry)
        self._save_task: Optional[asyncio.Task] = None
        self._running = False
        self._previous_excepthook = None

    # ===== LIFECYCLE =====

    async def startup(self):
        """Install fault handlers and start the periodic save task."""
        self._running = True
        self.install_fault_handlers(asyncio.get_running_loop())
        self._save_task = asyncio.create_task(self._periodic_save())
        logger.info(f"Scene server started (autosave every {self.settings.autosave_interval:g}s)")

    async def shutdown(self):
        """Stop autosave and force one final snapshot write."""
        self._running = False
        if self._save_task:
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
            self._save_task = None
        try:
            self.store.save()
            logger.info("Final scene snapshot saved, shutting down")
        except PersistenceFailure as e:
            logger.error(f"Final save failed: {e.message}")
        self.uninstall_fault_handlers()

    async def _periodic_save(self):
        """Periodically save state. A failed write is retried on the next tick."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.autosave_interval)
                self.autosave()
            except asyncio.CancelledError:
                break

    def autosave(self) -> bool:
        try:
            self.store.save()
            return True
        except PersistenceFailure as e:
            logger.error(f"Autosave failed, will retry: {e.message}")
            return False

    def save_now(self) -> str:
        """Manual save trigger. Raises PersistenceFailure."""
        saved_at = self.store.save()
        logger.info("Scene state saved on request")
        return saved_at

    # ===== EXPORT / IMPORT =====

    def export_document(self) -> dict:
        return self.persistence.export_document(self.store.snapshot())

    def import_document(self, raw: bytes) -> dict:
        """Validate, back up the prior scene, replace, persist, then reset every client."""
        new_state = self.persistence.parse_import(raw, fallback_fog=self.store.state.fog_settings)
        backup_file = self.persistence.backup(self.store.snapshot())
        self.store.replace_state(new_state)
        self.sync.state_reset("Game state imported successfully")
        info = self.store.info()
        return {
            "success": True,
            "message": "Game state imported successfully",
            "mapsCount": info["mapsCount"],
            "poisCount": info["poisCount"],
            "actorsCount": info["actorsCount"],
            "backupFile": backup_file.name,
        }

    # ===== FAULT HANDLING =====

    def emergency_save(self, reason: str) -> bool:
        """Best-effort snapshot write before an uncaught fault takes the process down."""
        logger.critical(f"Emergency save triggered: {reason}")
        try:
            self.store.save()
            return True
        except Exception as e:
            logger.error(f"Emergency save failed: {e}")
            return False

    def _excepthook(self, exc_type, exc, tb):
        self.emergency_save(f"uncaught {exc_type.__name__}: {exc}")
        (self._previous_excepthook or sys.__excepthook__)(exc_type, exc, tb)

    def _loop_exception_handler(self, loop, context):
        self.emergency_save(context.get("message", "unhandled exception in event loop"))
        loop.default_exception_handler(context)

    def install_fault_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        if self._previous_excepthook is None:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self._excepthook
        if loop is not None:
            loop.set_exception_handler(self._loop_exception_handler)

    def uninstall_fault_handlers(self):
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None
