from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite+aiosqlite:///./gallery.db"

    APP_ENV: str = "development"

    # Playback runs at a nominal 20 events/sec at 1x speed.
    TIMELAPSE_BASE_INTERVAL_MS: int = 50
    TIMELAPSE_DEFAULT_WIDTH: int = 800
    TIMELAPSE_DEFAULT_HEIGHT: int = 600
    TIMELAPSE_MAX_BLOB_BYTES: int = 50 * 1024 * 1024
    TIMELAPSE_SNAPSHOT_INTERVAL: int = 200

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
