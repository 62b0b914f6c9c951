from typing import List

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    ENVIRONMENT: str = Field(default="development", env="ENVIRONMENT")
    LOG_LEVEL: str = Field(default="INFO", env="LOG_LEVEL")

    # Base MongoDB
    MONGO_URL: str = Field(default="mongodb://localhost:27017", env="MONGO_URL")
    MONGO_DB: str = Field(default="transportconnect", env="MONGO_DB")

    # JWT
    JWT_SECRET: str = Field(default="change-me-transportconnect", env="JWT_SECRET")
    ALGORITHM: str = Field(default="HS256", env="ALGORITHM")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60 * 24 * 7, env="ACCESS_TOKEN_EXPIRE_MINUTES")
    REFRESH_TOKEN_EXPIRE_DAYS: int = Field(default=30, env="REFRESH_TOKEN_EXPIRE_DAYS")
    JWT_ISSUER: str = Field(default="TransportConnect", env="JWT_ISSUER")
    JWT_AUDIENCE: str = Field(default="TransportConnect-Users", env="JWT_AUDIENCE")
    JWT_REFRESH_AUDIENCE: str = Field(default="TransportConnect-Refresh", env="JWT_REFRESH_AUDIENCE")

    # Verrouillage des comptes
    MAX_LOGIN_ATTEMPTS: int = Field(default=5, env="MAX_LOGIN_ATTEMPTS")
    LOCK_DURATION_HOURS: int = Field(default=24, env="LOCK_DURATION_HOURS")

    # Email
    MAIL_ENABLED: bool = Field(default=False, env="MAIL_ENABLED")
    MAIL_USERNAME: str = Field(default="", env="MAIL_USERNAME")
    MAIL_PASSWORD: str = Field(default="", env="MAIL_PASSWORD")
    MAIL_FROM: str = Field(default="noreply@transportconnect.ma", env="MAIL_FROM")
    MAIL_PORT: int = Field(default=587, env="MAIL_PORT")
    MAIL_SERVER: str = Field(default="smtp.gmail.com", env="MAIL_SERVER")
    FRONTEND_URL: str = Field(default="http://localhost:3000", env="FRONTEND_URL")

    # HTTP
    CORS_ORIGINS: str = Field(default="http://localhost:3000", env="CORS_ORIGINS")
    RATE_LIMIT_WINDOW_SECONDS: int = Field(default=15 * 60, env="RATE_LIMIT_WINDOW_SECONDS")
    RATE_LIMIT_MAX_REQUESTS: int = Field(default=100, env="RATE_LIMIT_MAX_REQUESTS")
    LOGIN_RATE_LIMIT_MAX: int = Field(default=5, env="LOGIN_RATE_LIMIT_MAX")

    class Config:
        env_file = ".env"

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
