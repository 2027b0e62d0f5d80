from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class Settings:
    """Application settings loaded from environment variables.

    Keep all credentials and config centralized here.
    """

    def __init__(self) -> None:
        self.app_env: str = os.getenv("APP_ENV", "development")
        self.port: int = int(os.getenv("PORT", "3000"))
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

        self.gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        self.gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
        self.gemini_base_url: str = os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
        ).rstrip("/")
        self.model_timeout: float = float(os.getenv("MODEL_TIMEOUT", "60"))
        self.image_timeout: float = float(os.getenv("IMAGE_TIMEOUT", "15"))

        self.convo_file: Path = Path(os.getenv("CONVO_FILE", "convo.json"))
        self.upload_dir: Path = Path(os.getenv("UPLOAD_DIR", "uploads"))
        self.static_dir: Path = Path(os.getenv("STATIC_DIR", str(PROJECT_ROOT)))
        self.history_view_limit: int = int(os.getenv("HISTORY_VIEW_LIMIT", "10"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
