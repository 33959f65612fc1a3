from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    LOG_LEVEL: str = "INFO"

    # Firebase settings
    SA_PATH: str = "./serviceAccountKey.json"
    DATABASE_URL: str | None = None
    FCM_PROJECT_ID: str | None = None

    # Scheduling
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"

    # =================================================================
    # DISPATCH SETTINGS
    # =================================================================
    MAX_CONCURRENT_DISPATCHES: int = 20
    HTTP_TIMEOUT_SECONDS: float = 30.0

    WORKER_JOB: str = "send_reminders"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def service_account_path(self) -> Path:
        return Path(self.SA_PATH).expanduser()

    def database_url(self, service_account_info: dict | None = None) -> str | None:
        """
        Realtime Database URL, falling back to the service account's
        databaseURL field when DATABASE_URL is not set.
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL.rstrip("/")
        if service_account_info and service_account_info.get("databaseURL"):
            return str(service_account_info["databaseURL"]).rstrip("/")
        return None

    def fcm_project_id(self, service_account_info: dict | None = None) -> str | None:
        if self.FCM_PROJECT_ID:
            return self.FCM_PROJECT_ID
        if service_account_info:
            return service_account_info.get("project_id")
        return None


settings = Settings()
