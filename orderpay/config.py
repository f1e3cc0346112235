import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseModel):
    DATABASE_URL: str | None = os.getenv("DATABASE_URL")
    JWT_SECRET: str = os.getenv("JWT_SECRET", "devsecret")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON: bool = os.getenv("LOG_JSON", "false").lower() == "true"
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "30"))
    KAFKA_BOOTSTRAP: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")

    CLICK_SERVICE_ID: str = os.getenv("CLICK_SERVICE_ID", "test_service")
    CLICK_MERCHANT_ID: str = os.getenv("CLICK_MERCHANT_ID", "test_merchant")
    CLICK_MERCHANT_USER_ID: str = os.getenv("CLICK_MERCHANT_USER_ID", "test_user")
    CLICK_SECRET_KEY: str = os.getenv("CLICK_SECRET_KEY", "test_secret")
    CLICK_CHECKOUT_URL: str = os.getenv("CLICK_CHECKOUT_URL", "https://my.click.uz/services/pay")
    CLICK_API_URL: str = os.getenv("CLICK_API_URL", "https://api.click.uz/v2/merchant")

    PAYME_MERCHANT_ID: str = os.getenv("PAYME_MERCHANT_ID", "test_merchant")
    PAYME_SECRET_KEY: str = os.getenv("PAYME_SECRET_KEY", "test_secret")
    PAYME_CHECKOUT_URL: str = os.getenv("PAYME_CHECKOUT_URL", "https://checkout.paycom.uz")
    PAYME_API_URL: str = os.getenv("PAYME_API_URL", "https://checkout.paycom.uz/api")

    UZUM_MERCHANT_ID: str = os.getenv("UZUM_MERCHANT_ID", "test_uzum_merchant")
    UZUM_SECRET_KEY: str = os.getenv("UZUM_SECRET_KEY", "test_uzum_secret")
    UZUM_API_KEY: str = os.getenv("UZUM_API_KEY", "test_uzum_api_key")
    UZUM_API_URL: str = os.getenv("UZUM_API_URL", "https://api.uzum.uz/v1")
    UZUM_WEBHOOK_URL: str = os.getenv(
        "UZUM_WEBHOOK_URL", "http://localhost:8000/payments/uzum/callback"
    )

    STRIPE_SECRET_KEY: str | None = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: str | None = os.getenv("STRIPE_WEBHOOK_SECRET")
    CARD_CURRENCY: str = os.getenv("CARD_CURRENCY", "uzs")


settings = Settings()
