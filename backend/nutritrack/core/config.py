from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    environment: str = "development"

    # Database
    database_url: str = "sqlite:///./nutritrack.db"
    sql_echo: bool = False

    # Logging
    log_level: str = "INFO"

    # Entry ingestion
    ai_review_confidence_threshold: float = 0.6
    quick_meal_max_items: int = 20
    batch_max_items: int = 100
    allow_owner_hard_delete: bool = False

    # Legacy schema migration
    migration_batch_size: int = 100
    migration_backup_prefix: str = "consumption_backup_"
    migration_dry_run: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    class Config:
        env_file = ".env"


settings = Settings()
