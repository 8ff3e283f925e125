from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from fastapi import Depends
from pydantic_settings import BaseSettings
from typing_extensions import Annotated

load_dotenv()


class Settings(BaseSettings):
    data_dir: Path = Path("data")
    write_debounce_ms: int = 100  # quiet period before a task file is written
    session_max_age_minutes: int = 60
    session_cookie_name: str = "authToken"
    cookie_secure: bool = False
    bcrypt_rounds: int = 12
    live_queue_size: int = 100

    google_client_id: str = ""
    google_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant_id: str = "common"
    base_url: str = "http://localhost:3004"
    oauth_redirect_uri: str | None = None
    oauth_state_ttl_seconds: int = 600
    oauth_timeout_seconds: float = 10.0

    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"
    app_version: str = "1.0.0"

    @property
    def session_max_age_seconds(self) -> int:
        return self.session_max_age_minutes * 60

    @property
    def write_debounce_seconds(self) -> float:
        return self.write_debounce_ms / 1000

    @property
    def resolved_redirect_uri(self) -> str:
        return self.oauth_redirect_uri or f"{self.base_url}/api/auth/oauth/callback"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
