from decimal import Decimal
from typing import Optional
from urllib.parse import quote_plus

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    postgres_user: str = "storefront"
    postgres_password: str = "storefront"
    postgres_db: str = "storefront"
    postgres_host: str = "localhost"
    postgres_port: str = "5432"

    # Set to a full SQLAlchemy URL (e.g. sqlite) to bypass the postgres parts
    database_url_override: Optional[str] = None

    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Pricing policy
    tax_rate: Decimal = Decimal("0.18")
    free_shipping_threshold: Decimal = Decimal("500")
    shipping_flat_rate: Decimal = Decimal("50")
    currency: str = "INR"

    # Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    store_name: str = "OT-OnlyThing"

    # Order lifecycle
    payment_expiry_minutes: int = 30
    reconcile_min_age_minutes: int = 5

    env: str = "local"
    log_level: str = "INFO"

    @property
    def database_url(self):
        if self.database_url_override:
            return self.database_url_override

        encoded_password = quote_plus(self.postgres_password)
        return (
            f"postgresql+psycopg2://{self.postgres_user}:"
            f"{encoded_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "allow"

settings = Settings()
