# backend/config.py
from pydantic_settings import BaseSettings
from typing import ClassVar
from pathlib import Path
from dotenv import load_dotenv

# Pick up a .env in the working directory as well (local runs)
load_dotenv()

# Resolve absolute path to the .env file for reliable loading
env_path = Path(__file__).parent.parent / ".env"

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./inventory.db"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    # Comma separated list, "*" allows everything
    CORS_ORIGINS: str = "*"

    # Directory with the browser UI (inventory.html etc.)
    STATIC_DIR: str = "docs"

    # Work order code generation
    WORKORDER_CODE_ATTEMPTS: int = 8

    # app_settings key holding the default low stock threshold
    LOW_STOCK_SETTING_KEY: str = "low_stock_default"

    # Record absolute sets and intake top-ups as ADJUST movements
    AUDIT_UNTRACKED_CHANGES: bool = True

    LIST_LIMIT_WORKORDERS: int = 250
    LIST_LIMIT_MOVEMENTS: int = 200

    class Config:
        env_file: ClassVar[str] = str(env_path)
        extra: ClassVar[str] = "ignore"

    @property
    def cors_origins(self) -> list:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
