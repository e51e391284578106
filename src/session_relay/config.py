"""Application configuration with environment variable support."""

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Priority: ENV > .env.local > .env > defaults
    .env.local is gitignored for local overrides
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Service configuration
    PROJECT_NAME: str = "Session Relay"
    DEBUG: bool = False
    HOST: str = "localhost"
    PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # Security
    API_PASSWORD: Optional[str] = None
    ALLOW_BYPASS_PERMISSIONS: bool = False

    # Sessions
    DEFAULT_PERMISSION_MODE: Literal[
        "acceptEdits", "bypassPermissions", "default", "plan"
    ] = "default"
    DEFAULT_PROVIDER: str = "claude"
    ENABLE_ECHO_PROVIDER: bool = False
    DEFAULT_CWD: str = "."
    BROWSE_ROOT: str = "~"
    CLAUDE_PROJECTS_DIR: str = "~/.claude/projects"
    MAX_SESSIONS: int = 50
    SESSION_TTL_SECONDS: int = 3600       # Measured from session creation
    CLEANUP_INTERVAL_SECONDS: int = 300
    MAX_TURNS: int = 50

    # Task tracking: numeric id reported in TaskCreate results
    TASK_ID_PATTERN: str = r"Task #(\d+)"

    # Transcript tailing for sessions not owned by this process
    TRANSCRIPT_POLL_INTERVAL: float = 1.0

    # WebSocket keepalive configuration
    WS_PING_INTERVAL: int = 25          # Application ping interval (seconds)
    WS_AUTH_TIMEOUT: int = 10           # Max wait for the auth frame (seconds)
    WS_PROTOCOL_PING_INTERVAL: float = 15.0  # Protocol ping interval (seconds)
    WS_PROTOCOL_PING_TIMEOUT: float = 10.0   # Protocol pong timeout (seconds)


# Global settings instance
settings = Settings()
