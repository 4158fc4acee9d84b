from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Awaz-e-Talba Voting API"
    SQLALCHEMY_DATABASE_URI: str = "sqlite:///./awaz_voting.db"
    SECRET_KEY: str = "change-this-secret-in-prod"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    BACKEND_CORS_ORIGINS: list[str] = ["*"]
    FIRST_SUPERADMIN_EMAIL: str = "superadmin@awaz.com"
    FIRST_SUPERADMIN_PASSWORD: str = "admin12345"
    LOG_LEVEL: str = "INFO"

    # Voter anonymization, must match the salt used for existing ledgers
    VOTER_HASH_SALT: str = "salt_2024"
    SESSION_TIMEOUT_MINUTES: int = 30

    # Fraud detection window handed to the detector
    FRAUD_WINDOW_MINUTES: int = 60
    FRAUD_WINDOW_LIMIT: int = 200
    BLOCK_SUSPICIOUS_VOTES: bool = False

    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: int = 60
    SCHEDULER_SWEEP_TIMEOUT_SECONDS: float = 30.0

    LIVE_TALLY_ENABLED: bool = True
    LIVE_TALLY_POLL_SECONDS: float = 5.0
    LIVE_TALLY_DEBOUNCE_SECONDS: float = 1.0

    class Config:
        env_file = ".env"

settings = Settings()
