from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ddb_path: Path = Path("data/stations.duckdb")
    export_path: Path = Path("exports")

    seoul_api_key: str | None = None
    seoul_api_base_url: str = "http://openAPI.seoul.go.kr:8088"
    molit_service_key: str | None = None
    molit_api_base_url: str = "https://apis.data.go.kr/1613000"
    nominatim_base_url: str = "https://nominatim.openstreetmap.org"
    nominatim_user_agent: str = "station-sync/0.1"
    http_timeout: float = 30.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
