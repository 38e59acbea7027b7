"""
Persistence Module - durable JSON snapshots of the scene.

Provides functionality to:
- Load the last saved scene on startup (or report a fresh start)
- Write a full snapshot after every accepted mutation and on autosave
- Build the downloadable export document
- Validate an uploaded import document
- Take a timestamped backup before an import replaces the scene
"""

import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from errors import PersistenceFailure, ValidationError
from logger import setup_logger
from scene_state import (
    DEFAULT_VISION_RADIUS,
    MAX_VISION_RADIUS,
    MIN_VISION_RADIUS,
    FogSettings,
    SceneState,
)

logger = setup_logger("persistence")

STATE_FILE_NAME = "gameState.json"
BACKUP_PREFIX = "gameState-backup-"
EXPORT_VERSION = "1.0"
EXPORT_FILE_NAME = "tabletop-export.json"


class SnapshotStore:
    """Reads and writes scene snapshots under a data directory."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.state_file = self.data_dir / STATE_FILE_NAME
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[SceneState]:
        """Load the last snapshot. Returns None when starting fresh."""
        if not self.state_file.exists():
            logger.info("No saved scene state found, starting fresh")
            return None
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = SceneState.from_dict(data)
            if not state.fog_settings.has_valid_radius():
                logger.warning(f"Saved vision radius {state.fog_settings.vision_radius} is out of range, "
                               f"using {DEFAULT_VISION_RADIUS}")
                state.fog_settings.vision_radius = DEFAULT_VISION_RADIUS
            logger.info(f"Loaded scene state: {len(state.maps)} maps, "
                        f"{len(state.points_of_interest)} POIs, {len(state.actors)} actors")
            return state
        except Exception as e:
            logger.error(f"Error loading scene state: {e}")
            logger.info("Starting with fresh scene state")
            return None

    def save(self, state: SceneState) -> str:
        """Write a full snapshot. Raises PersistenceFailure on any write error."""
        saved_at = datetime.now().isoformat()
        data = state.to_dict()
        data["lastSaved"] = saved_at
        tmp_file = self.state_file.with_suffix(".json.tmp")
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            tmp_file.replace(self.state_file)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error saving scene state: {e}")
            raise PersistenceFailure(f"Failed to save scene state: {e}") from e
        state.last_saved = saved_at
        logger.debug("Scene state saved")
        return saved_at

    def last_saved_at(self) -> Optional[str]:
        if not self.state_file.exists():
            return None
        return datetime.fromtimestamp(self.state_file.stat().st_mtime).isoformat()

    # ===== EXPORT / IMPORT =====

    def export_document(self, snapshot: dict) -> dict:
        """Full snapshot as a single downloadable document."""
        document = dict(snapshot)
        document.pop("lastSaved", None)
        document["exportedAt"] = datetime.now().isoformat()
        document["version"] = EXPORT_VERSION
        return document

    def parse_import(self, raw: bytes, fallback_fog: Optional[FogSettings] = None) -> SceneState:
        """Validate an uploaded document and build the replacement state.

        Documents without fogSettings (the export format predates them) keep
        the fallback settings.
        """
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Import file is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError("Invalid game state file format")
        if not isinstance(data.get("maps"), dict) or not isinstance(data.get("pointsOfInterest"), dict):
            raise ValidationError("Invalid game state file format")

        try:
            state = SceneState.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"Invalid game state file format: {e}") from e
        if not state.fog_settings.has_valid_radius():
            raise ValidationError(
                f"visionRadius must be between {MIN_VISION_RADIUS} and {MAX_VISION_RADIUS}"
            )
        if "fogSettings" not in data and fallback_fog is not None:
            state.fog_settings = FogSettings.from_dict(fallback_fog.to_dict())
        return state

    def backup(self, snapshot: dict) -> Path:
        """Write the prior scene next to the state file before it is replaced."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_file = self.data_dir / f"{BACKUP_PREFIX}{timestamp}.json"
        document = dict(snapshot)
        document["backedUpAt"] = datetime.now().isoformat()
        try:
            with open(backup_file, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Backup failed: {e}")
            raise PersistenceFailure(f"Failed to back up scene state: {e}") from e
        logger.info(f"Backed up scene state to {backup_file.name}")
        return backup_file

    def list_backups(self) -> List[str]:
        return sorted(p.name for p in self.data_dir.glob(f"{BACKUP_PREFIX}*.json"))
