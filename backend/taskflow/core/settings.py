from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    MONGODB_URI: str = "mongodb://mongodb:27017"
    MONGODB_DB_NAME: str = "taskflow"
    # Multi-document transactions need a replica set; standalone servers fall
    # back to compare-and-swap plus the repair sweep
    MONGODB_USE_TRANSACTIONS: bool = False

    JWT_SECRET: str = "change_me"
    JWT_ALG: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MIN: int = 60 * 24

    # Invitation links are rendered as {APP_URL}/invite/{token}
    APP_URL: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""
    SMTP_FROM_NAME: str = "Taskflow"

    # Read from environment variables first, then from .env file, then use defaults
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


settings = Settings()
