import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        secret_key: str,
        token_max_age_hours: int,
        frontend_url: str,
        report_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.frontend_url = frontend_url
        self.report_timeout_secs = report_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finance.db"
        database_url = f"sqlite:///{default_db}"
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "4f0c2a9d61e3b87a5c1d0e92f7b6a3c8d5e4f1a2b3c4d5e6f708192a3b4c5d6e",
    )
    token_max_age_hours = int(os.getenv("FINANCE_TOKEN_MAX_AGE_HOURS", "24"))
    frontend_url = os.getenv("FINANCE_FRONTEND_URL", "http://localhost:5173")
    report_timeout_secs = float(os.getenv("FINANCE_REPORT_TIMEOUT_SECS", "8"))
    return Settings(
        database_url=database_url,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        frontend_url=frontend_url,
        report_timeout_secs=report_timeout_secs,
    )
