from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_BASE_URL: str = "http://localhost:5000/api"
    PUSH_URL: str = "ws://localhost:5000/ws"
    API_TOKEN: str = ""
    USER_ID: int | None = None

    HTTP_TIMEOUT_SECONDS: float = 15.0

    THREAD_POLL_INTERVAL: float = 3.0
    NOTIFICATION_REFRESH_INTERVAL: float = 30.0

    PUSH_CONNECT_TIMEOUT: float = 10.0
    PUSH_HEARTBEAT_SECONDS: float = 30.0
    RECONNECT_BASE_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 10
    RECONNECT_STABLE_SECONDS: float = 10.0

    OPTIMISTIC_MATCH_WINDOW_SECONDS: float = 10.0
    CUE_COOLDOWN_SECONDS: float = 2.0

    CORS_ORIGINS: list[str] = ["*"]
    UI_HEARTBEAT_SECONDS: int = 30

    HOST: str = "127.0.0.1"
    PORT: int = 8000
    LOG_LEVEL: str = "info"

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
