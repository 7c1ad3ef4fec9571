from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite:///./vouchers.db"
    
    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    
    # Vouchers
    VOUCHER_SECRET: str
    VOUCHER_TOKEN_TTL_HOURS: int = 24
    VOUCHER_NUMBER_MAX_ATTEMPTS: int = 10
    VOUCHER_DOCUMENT_DIR: str = "static/vouchers"
    
    # Expiration sweep
    SCHEDULER_ENABLED: bool = True
    VOUCHER_SWEEP_INTERVAL_HOURS: int = 24
    
    # Application
    PROJECT_NAME: str = "Booking Voucher Service"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: Optional[str] = None
    
    @property
    def cors_origins(self) -> list:
        if not self.CORS_ORIGINS:
            return ["http://localhost:3000", "http://localhost:5173"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

settings = Settings()
