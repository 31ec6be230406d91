"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every timing that the broadcast layer depends on lives here: how long to wait
before re-opening a dropped change stream, how often the polling fallback
looks for modified documents, how often each report is recomputed, and when
an idle dashboard tab is considered stale. Values can be overridden from the
environment or a `.env` file without touching the code.
"""
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Persistence
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "fleet"
    RIDES_SNAPSHOT_LIMIT: int = 50

    # Change watching
    CHANGE_STREAM_RECONNECT_DELAY_S: float = 5.0
    CHANGE_SETTLE_DELAY_S: float = 0.1
    POLL_FALLBACK_INTERVAL_S: float = 2.0

    # Broadcast timers
    MODEL_REFRESH_INTERVAL_S: float = 5.0
    REPORTS_SUMMARY_INTERVAL_S: float = 300.0
    REPORTS_HEAVY_INTERVAL_S: float = 600.0

    # Stale connection sweeps
    STALE_SWEEP_INTERVAL_S: float = 60.0
    STALE_CONNECTION_TIMEOUT_S: float = 300.0
    REPORT_SWEEP_INTERVAL_S: float = 900.0
    REPORT_CONNECTION_TIMEOUT_S: float = 1800.0

    # Reports
    MAX_REPORT_RANGE_DAYS: int = 365
    CHANGE_CAP_PERCENT: float = 200.0
    ZERO_BASELINE_CHANGE_FACTOR: float = 0.1
    ZERO_BASELINE_CHANGE_MAX: float = 50.0

    # Short polling fallback for clients without WebSocket support
    SHORT_POLL_INTERVAL_MS: int = 5000

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

settings = Settings()
