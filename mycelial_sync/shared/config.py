"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.
Where it fits: every channel URL, reconnect timing and buffer size the sync
client consumes is declared here instead of deep inside a component.

WHAT IS HAPPENING HERE:
Values come from defaults, then a local `.env` file, then `MYCELIAL_*`
environment variables. Components take a `Settings` instance so tests can
build one with overrides, while the CLI uses the module-level `settings`.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MYCELIAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        # Tolerate unrelated keys in a shared .env
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"

    # Push channels
    P2P_WS_URL: str = "ws://localhost:8080/ws"
    ORCHESTRATOR_WS_URL: str = "ws://localhost:8080/ws"

    # Pull channels
    API_URL: str = "http://localhost:8080/api"
    ORCHESTRATOR_API_URL: str = "http://localhost:8080/api"
    HTTP_TIMEOUT_S: float = 10.0

    # Reconnect policy: delay before attempt k is RECONNECT_INTERVAL_S * 2^(k-1)
    RECONNECT_INTERVAL_S: float = 3.0
    MAX_RECONNECT_ATTEMPTS: int = 5
    RESET_DELAY_S: float = 0.1
    AUTO_CONNECT: bool = True

    CHAT_HISTORY_LIMIT: int = 100
    SUBSCRIBE_TOPICS: list[str] = ["orchestrator", "workloads", "nodes", "cluster"]

    # Sandbox node
    SANDBOX_HOST: str = "127.0.0.1"
    SANDBOX_PORT: int = 8080
    SANDBOX_PEER_CHURN_S: float = 4.0
    SANDBOX_NODE_STATUS_S: float = 3.0
    SANDBOX_WORKLOAD_TICK_S: float = 1.5


settings = Settings()
