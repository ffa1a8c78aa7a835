from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://billing:billingpassword@db:3306/tenant_billing?charset=utf8mb4"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    SQL_ECHO: bool = False

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID: str = ""
    STRIPE_PRICE_LOOKUP_KEY: str = "community_monthly"

    # 課金ルール
    PLATFORM_TRIAL_DAYS: int = 14
    PROCESSOR_TRIAL_DAYS: int = 14
    PLACEMENT_CREDITS_PER_CYCLE: int = 2

    # スケジューラ
    SWEEP_INTERVAL_HOURS: int = 4

    # サービス設定
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Communities Billing"
    ALLOWED_ORIGINS: str = "http://localhost:8000,http://localhost:5000"

    # セッション
    SESSION_TIMEOUT_MINUTES: int = 60

    # 環境
    ENV: str = "development"
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
