import os
from dataclasses import dataclass

from dotenv import load_dotenv


DEFAULT_FONT = "/usr/share/fonts/ttf-dejavu/DejaVuSans-Bold.ttf"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


@dataclass
class Settings:
    port: int = 3000
    max_jobs: int = 2
    jobs_dir: str = "/tmp/ffmpeg-jobs"
    font_cache_dir: str = "/app/fonts"
    upload_dir: str = "/tmp/ffmpeg-uploads"
    default_font: str = DEFAULT_FONT
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    engine_timeout: float = 600.0
    probe_timeout: float = 60.0
    fetch_timeout: float = 60.0
    max_redirects: int = 5
    cleanup_delay: float = 60.0      # seconds a finished job dir survives
    upload_retention: float = 1800.0  # 30 minutes
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, loading .env first."""
        load_dotenv()
        return cls(
            port=_env_int("PORT", cls.port),
            max_jobs=_env_int("MAX_JOBS", cls.max_jobs),
            jobs_dir=os.getenv("JOBS_DIR", cls.jobs_dir),
            font_cache_dir=os.getenv("FONT_CACHE_DIR", cls.font_cache_dir),
            upload_dir=os.getenv("UPLOAD_DIR", cls.upload_dir),
            default_font=os.getenv("DEFAULT_FONT", cls.default_font),
            ffmpeg_path=os.getenv("FFMPEG_PATH", cls.ffmpeg_path),
            ffprobe_path=os.getenv("FFPROBE_PATH", cls.ffprobe_path),
            engine_timeout=_env_float("ENGINE_TIMEOUT", cls.engine_timeout),
            probe_timeout=_env_float("PROBE_TIMEOUT", cls.probe_timeout),
            fetch_timeout=_env_float("FETCH_TIMEOUT", cls.fetch_timeout),
            max_redirects=_env_int("MAX_REDIRECTS", cls.max_redirects),
            cleanup_delay=_env_float("CLEANUP_DELAY", cls.cleanup_delay),
            upload_retention=_env_float("UPLOAD_RETENTION", cls.upload_retention),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )

    def ensure_dirs(self) -> None:
        for d in (self.jobs_dir, self.font_cache_dir, self.upload_dir):
            os.makedirs(d, exist_ok=True)
