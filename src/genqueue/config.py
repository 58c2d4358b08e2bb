"""Configuration for the generation queue engine.

Usage:
    from genqueue.config import Config

    # Access config values
    database_url = Config.DATABASE_URL
    stale_minutes = Config.STALE_MINUTES
"""

import os


class Config:
    """Centralized configuration for the generation queue engine.

    All configuration values are class variables that can be accessed directly.
    Values are loaded from environment variables with sensible defaults.

    Example:
        from genqueue.config import Config

        print(Config.GENQUEUE_DIR)
        print(Config.DATABASE_URL)
    """

    # ========================================================================
    # Helper methods (static)
    # ========================================================================

    @staticmethod
    def _get_genqueue_dir() -> str:
        """Get and validate GENQUEUE_DIR environment variable.

        Returns:
            Validated GENQUEUE_DIR path

        Raises:
            ValueError: If GENQUEUE_DIR not set or not writable
        """
        genqueue_dir = os.getenv("GENQUEUE_DIR")
        if not genqueue_dir:
            raise ValueError("GENQUEUE_DIR environment variable must be set")

        if not os.access(genqueue_dir, os.W_OK):
            raise ValueError(
                f"GENQUEUE_DIR does not exist or no write permission: {genqueue_dir}"
            )

        return genqueue_dir

    @staticmethod
    def _get_value(key: str, default: str) -> str:
        """Get configuration value from environment with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Get integer configuration value."""
        return int(os.getenv(key, str(default)))

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Get boolean configuration value."""
        return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

    @staticmethod
    def _get_list(key: str, default: str, separator: str = ",") -> list[str]:
        """Get list configuration value."""
        return [v.strip() for v in os.getenv(key, default).split(separator) if v.strip()]

    # ========================================================================
    # Common Configuration
    # ========================================================================

    GENQUEUE_DIR: str = _get_genqueue_dir()

    DATABASE_URL: str = _get_value("DATABASE_URL", f"sqlite:///{GENQUEUE_DIR}/genqueue.db")

    LOG_LEVEL: str = _get_value("LOG_LEVEL", "INFO")

    # ========================================================================
    # Artifact Storage Configuration
    # ========================================================================

    ARTIFACT_STORAGE_DIR: str = _get_value("ARTIFACT_STORAGE_DIR", f"{GENQUEUE_DIR}/artifacts")
    ARTIFACT_RETENTION_DAYS: int = _get_int("ARTIFACT_RETENTION_DAYS", 30)
    ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS: int = _get_int("ARTIFACT_DOWNLOAD_TIMEOUT_SECONDS", 60)

    # ========================================================================
    # Provider Configuration
    # ========================================================================

    APP_URL: str = _get_value("APP_URL", "http://localhost:8000")
    WEBHOOK_PATH: str = _get_value("WEBHOOK_PATH", "/api/webhooks/provider")
    PROVIDER_BASE_URL: str = _get_value("PROVIDER_BASE_URL", "https://queue.fal.run")
    PROVIDER_API_KEY: str = _get_value("PROVIDER_API_KEY", "")
    PROVIDER_TIMEOUT_SECONDS: int = _get_int("PROVIDER_TIMEOUT_SECONDS", 30)

    # ========================================================================
    # Queue Configuration
    # ========================================================================

    # processing jobs older than this never receive a webhook
    STALE_MINUTES: int = _get_int("STALE_MINUTES", 30)
    UNLIMITED_CONCURRENCY: int = _get_int("UNLIMITED_CONCURRENCY", 999)
    ESTIMATED_SECONDS_PER_JOB: int = _get_int("ESTIMATED_SECONDS_PER_JOB", 30)
    AUTO_SWEEP_ON_STATS: bool = _get_bool("AUTO_SWEEP_ON_STATS", True)
    # empty means every catalog model is enabled
    ENABLED_MODELS: list[str] = _get_list("ENABLED_MODELS", "")

    # ========================================================================
    # Worker Configuration
    # ========================================================================

    WORKER_POLL_INTERVAL: int = _get_int("WORKER_POLL_INTERVAL", 5)

    # ========================================================================
    # MQTT Configuration
    # ========================================================================

    BROADCAST_TYPE: str = _get_value("BROADCAST_TYPE", "mqtt")
    MQTT_BROKER: str = _get_value("MQTT_BROKER", "localhost")
    MQTT_PORT: int = _get_int("MQTT_PORT", 1883)
    MQTT_TOPIC: str = _get_value("MQTT_TOPIC", "generation/events")

    @classmethod
    def webhook_url(cls) -> str:
        """Callback address handed to the provider on submission."""
        return f"{cls.APP_URL.rstrip('/')}{cls.WEBHOOK_PATH}"
