"""
Configuration for Orbit Lite
============================

Environment variables (prefix ORBIT_):
- ORBIT_DATA_DIR: Root directory for local data (default: ./orbit_data)
- ORBIT_DATABASE_URL: SQLAlchemy URL for the metadata store
  (default: sqlite:///<data_dir>/orbit.db)
- ORBIT_BLOB_DIR: Directory for uploaded files (default: <data_dir>/files)
- ORBIT_LLM_API_KEY: API key for the analysis collaborator (optional)
- ORBIT_LLM_API_HOST: OpenAI-compatible host (default: https://api.chatanywhere.tech)
- ORBIT_LLM_MODEL: Model to use (default: gpt-3.5-turbo)
- ORBIT_SEED_DEMO_DATA: Seed a demo matter on first load (default: true)
"""

from pathlib import Path
from typing import Optional, List
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="ORBIT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Local data
    data_dir: str = "./orbit_data"
    database_url: Optional[str] = None
    blob_dir: Optional[str] = None
    seed_demo_data: bool = True

    # Analysis collaborator (OpenAI-compatible chat completions)
    llm_api_key: Optional[str] = None
    llm_api_host: str = "https://api.chatanywhere.tech"
    llm_model: str = "gpt-3.5-turbo"
    llm_timeout: int = 60

    # Backup archive limits
    max_archive_files: int = 5000
    max_file_bytes: int = 100 * 1024 * 1024
    max_total_uncompressed_bytes: int = 2 * 1024 * 1024 * 1024
    max_compression_ratio: int = 200

    # Service info
    log_level: str = "INFO"
    service_version: str = "1.0.0"

    def resolved_database_url(self) -> str:
        """Database URL, defaulting to a SQLite file under data_dir"""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{Path(self.data_dir) / 'orbit.db'}"

    def resolved_blob_dir(self) -> str:
        """Blob directory, defaulting to <data_dir>/files"""
        return self.blob_dir or str(Path(self.data_dir) / "files")

    def validate_llm_config(self) -> List[str]:
        """Validate analysis collaborator configuration, return list of warnings"""
        warnings = []
        if not self.llm_api_key:
            warnings.append("ORBIT_LLM_API_KEY not set (AI analysis disabled)")
        if not self.llm_api_host.startswith(("http://", "https://")):
            warnings.append(f"ORBIT_LLM_API_HOST has no scheme: {self.llm_api_host}")
        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
