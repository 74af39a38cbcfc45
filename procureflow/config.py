from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, List


class Settings(BaseSettings):
    # Database Configuration
    database_url: Optional[str] = None
    db_username: Optional[str] = None
    db_password: Optional[str] = None
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: Optional[str] = None

    # Catalog search - remote item master endpoint, local item master when unset
    catalog_search_url: Optional[str] = None
    catalog_search_timeout: float = 10.0

    # Line item import
    import_batch_size: int = 10

    cors_origins: List[str] = ["http://localhost:4200", "http://127.0.0.1:4200", "http://localhost:5173"]
    log_level: str = "INFO"

    @field_validator('import_batch_size', mode='before')
    @classmethod
    def parse_batch_size(cls, v):
        if v is None or v == '':
            return 10
        v = int(v)
        if v < 1:
            raise ValueError("import_batch_size must be at least 1")
        return v

    @field_validator('catalog_search_url', mode='before')
    @classmethod
    def parse_catalog_url(cls, v):
        if v is None or v == '':
            return None
        return v.rstrip('/')

    @property
    def database_connection_url(self) -> str:
        """Build database URL from individual components or use direct URL"""
        if all([self.db_username, self.db_password, self.db_host, self.db_port, self.db_name]):
            return f"postgresql://{self.db_username}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
        elif self.database_url:
            return self.database_url
        else:
            return "sqlite:///./procureflow.db"  # Fallback to SQLite

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
