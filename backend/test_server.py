"""Tests for the scene server runtime - autosave, import and fault handling."""
import asyncio
import json
import shutil
import sys
import tempfile
from pathlib import Path

import pytest
from unittest.mock import patch

from config import Settings
from errors import PersistenceFailure, ValidationError
from server import SceneServer
from synchronizer import STATE_RESET
from visibility import Role


class FakeTransport:
    async def send_json(self, message):
        pass


@pytest.fixture
def settings():
    temp_dir = Path(tempfile.mkdtemp())
    yield Settings(data_dir=temp_dir / "data", uploads_dir=temp_dir / "uploads", autosave_interval=0.05)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def server(settings):
    return SceneServer(settings)


class TestStartupState:

    def test_fresh_start(self, server):
        assert server.store.state.maps == {}

    def test_reloads_last_snapshot(self, settings):
        first = SceneServer(settings)
        m = first.store.create_map("Dungeon", 20, 20)
        second = SceneServer(settings)
        assert m.id in second.store.state.maps

    def test_sessions_not_restored(self, settings):
        first = SceneServer(settings)
        first.sync.connect(FakeTransport())
        second = SceneServer(settings)
        assert second.registry.count() == 0


class TestSaving:

    def test_save_now(self, server):
        saved_at = server.save_now()
        assert saved_at
        assert server.persistence.state_file.exists()

    def test_autosave_failure_is_logged_not_raised(self, server):
        with patch.object(server.persistence, "save", side_effect=PersistenceFailure("disk full")):
            assert server.autosave() is False
        assert server.autosave() is True

    @pytest.mark.asyncio
    async def test_periodic_save_runs(self, server):
        with patch.object(server.store, "save") as save:
            await server.startup()
            await asyncio.sleep(0.2)
            await server.shutdown()
        assert save.call_count >= 2

    @pytest.mark.asyncio
    async def test_shutdown_writes_final_snapshot(self, server):
        previous = sys.excepthook
        await server.startup()
        server.store.state.maps.clear()
        with patch.object(server.store, "save", wraps=server.store.save) as save:
            await server.shutdown()
        save.assert_called_once()
        assert server.persistence.state_file.exists()
        assert sys.excepthook is previous


class TestImport:

    def test_import_replaces_state_and_resets_clients(self, server):
        server.store.create_map("Old", 20, 20)
        session = server.sync.connect(FakeTransport())
        server.sync.join(session.session_id, Role.VIEWER)
        while not session.outbox.empty():
            session.outbox.get_nowait()

        document = {
            "maps": {"m1": {"id": "m1", "name": "New", "gridSize": {"width": 10, "height": 10}}},
            "pointsOfInterest": {},
            "actors": {},
            "currentMap": "m1",
        }
        result = server.import_document(json.dumps(document).encode())

        assert result["success"] is True
        assert result["mapsCount"] == 1
        assert list(server.store.state.maps) == ["m1"]
        assert (server.settings.data_dir / result["backupFile"]).exists()
        assert session.outbox.get_nowait()["type"] == STATE_RESET

    def test_invalid_import_changes_nothing(self, server):
        m = server.store.create_map("Keep", 20, 20)
        with pytest.raises(ValidationError):
            server.import_document(b"garbage")
        assert m.id in server.store.state.maps
        assert server.persistence.list_backups() == []


class TestFaultHandling:

    def test_emergency_save(self, server):
        assert server.emergency_save("test") is True
        assert server.persistence.state_file.exists()

    def test_emergency_save_failure_reported(self, server):
        with patch.object(server.persistence, "save", side_effect=PersistenceFailure("disk full")):
            assert server.emergency_save("test") is False

    def test_excepthook_saves_then_chains(self, server):
        previous = sys.excepthook
        chained = []
        sys.excepthook = lambda *args: chained.append(args)
        try:
            server.install_fault_handlers()
            with patch.object(server, "emergency_save") as emergency:
                sys.excepthook(RuntimeError, RuntimeError("boom"), None)
            emergency.assert_called_once()
            assert len(chained) == 1
        finally:
            server.uninstall_fault_handlers()
            sys.excepthook = previous
