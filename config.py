import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "3001"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    )

    # Storage
    db_file: str = os.getenv("LIBRARY_DB_FILE", os.path.join("data", "library.db"))
    uploads_dir: str = os.getenv("UPLOADS_DIR", "uploads")
    uploads_url_prefix: str = os.getenv("UPLOADS_URL_PREFIX", "/uploads")
    frontend_dir: str = os.getenv("FRONTEND_DIR", "dist")

    # Cover downloads
    cover_timeout: float = float(os.getenv("COVER_TIMEOUT", "10"))
    cover_max_redirects: int = int(os.getenv("COVER_MAX_REDIRECTS", "5"))
    # Some image hosts reject requests without a browser identity and a referer
    cover_user_agent: str = os.getenv(
        "COVER_USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    )
    cover_referer: str = os.getenv("COVER_REFERER", "https://book.douban.com/")

    # Import
    import_delay_seconds: float = float(os.getenv("IMPORT_DELAY_SECONDS", "0"))
    seed_sample_data: bool = _env_flag("SEED_SAMPLE_DATA", "False")

    # Application
    app_name: str = os.getenv("APP_NAME", "Reading Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()
