from dataclasses import dataclass
import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y")


@dataclass(frozen=True)
class AppConfig:
    """
    Main application settings.

    Keeps the critical parameters in one place so they are easy to
    review, override in tests and change later.
    """
    database_url: str = "sqlite:///./camp_checkin.db"
    redis_url: str = ""
    api_key: str = ""
    env: str = "dev"  # "dev" or "prod"
    report_cache_ttl_seconds: int = 15
    allow_test_reset: bool = True
    log_dir: str = "logs"
    log_level: str = "INFO"

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables.
        The .env file is read first, then the process environment.
        Raises an explicit error when something critical is missing.
        """
        load_dotenv()

        database_url = os.getenv("DATABASE_URL", "sqlite:///./camp_checkin.db")
        redis_url = os.getenv("REDIS_URL", "")
        api_key = os.getenv("API_KEY", "")

        env = os.getenv("ENV", "dev").lower()
        if env not in ("dev", "prod"):
            logger.warning(f"Invalid ENV '{env}', falling back to 'dev'")
            env = "dev"

        # In production API_KEY is mandatory
        if env == "prod":
            if not api_key or not api_key.strip():
                raise RuntimeError(
                    "ENV=prod requires API_KEY. "
                    "Set API_KEY in the production environment."
                )
            logger.info("PRODUCTION mode: API_KEY validated")
        else:
            if not api_key or not api_key.strip():
                logger.warning(
                    "DEV mode: API_KEY not set. "
                    "Mutating endpoints will accept requests without authentication."
                )

        report_cache_ttl_seconds = int(os.getenv("REPORT_CACHE_TTL_SECONDS", "15"))
        # Wiping scan history is a dev/test convenience, off by default in prod
        allow_test_reset = _env_flag("ALLOW_TEST_RESET", "0" if env == "prod" else "1")
        log_dir = os.getenv("LOG_DIR", "logs")
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

        return cls(
            database_url=database_url,
            redis_url=redis_url,
            api_key=api_key,
            env=env,
            report_cache_ttl_seconds=report_cache_ttl_seconds,
            allow_test_reset=allow_test_reset,
            log_dir=log_dir,
            log_level=log_level,
        )
