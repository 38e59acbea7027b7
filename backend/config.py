"""Runtime configuration, read from the environment (and an optional .env file)."""
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BACKEND_DIR = Path(__file__).parent
DEFAULT_DATA_DIR = BACKEND_DIR.parent / "data"
DEFAULT_UPLOADS_DIR = BACKEND_DIR.parent / "uploads"

POSITION_POLICIES = ("loose", "clamp", "reject")


@dataclass
class Settings:
    data_dir: Path = DEFAULT_DATA_DIR
    uploads_dir: Path = DEFAULT_UPLOADS_DIR
    host: str = "0.0.0.0"
    port: int = 3001
    autosave_interval: float = 30.0  # seconds
    max_upload_bytes: int = 10 * 1024 * 1024
    position_policy: str = "loose"  # loose | clamp | reject

    @classmethod
    def from_env(cls) -> "Settings":
        policy = os.getenv("POSITION_POLICY", "loose").lower()
        if policy not in POSITION_POLICIES:
            raise ValueError(f"POSITION_POLICY must be one of {', '.join(POSITION_POLICIES)}")
        return cls(
            data_dir=Path(os.getenv("SCENE_DATA_DIR", DEFAULT_DATA_DIR)),
            uploads_dir=Path(os.getenv("SCENE_UPLOADS_DIR", DEFAULT_UPLOADS_DIR)),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3001")),
            autosave_interval=float(os.getenv("AUTOSAVE_INTERVAL", "30")),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
            position_policy=policy,
        )
