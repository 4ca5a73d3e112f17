"""Application configuration via environment variables."""
from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    app_name: str = "MediaGraph"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # External generation / storage service
    generation_base_url: str = "http://localhost:3000"
    request_timeout_s: float = 600.0

    # Execution
    work_dir: Path = PROJECT_ROOT / "data" / "work"
    history_limit: int = 50
    max_concurrent_calls: int = 3
    save_sync_timeout_s: float = 60.0

    # Media composition
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    video_codec: str = "libx264"
    output_crf: int = 18
    inline_output_limit_bytes: int = 20 * 1024 * 1024
    frame_grab_timeout_s: float = 30.0

    model_config = {"env_prefix": "MEDIAGRAPH_"}


settings = Settings()
settings.work_dir.mkdir(parents=True, exist_ok=True)
