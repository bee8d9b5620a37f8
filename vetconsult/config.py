from decimal import Decimal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str

    # This service only VERIFIES tokens issued by the identity service
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    REDIS_URL: str

    # --- KAFKA SETTINGS (notification outbox) ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_NOTIFICATION_TOPIC: str = "booking_notifications"

    # --- PAYMENT GATEWAY (Razorpay) ---
    RAZORPAY_KEY_ID: str
    RAZORPAY_KEY_SECRET: SecretStr
    RAZORPAY_WEBHOOK_SECRET: SecretStr
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    PAYMENT_CURRENCY: str = "INR"
    SERVICE_FEE_RATE: Decimal = Decimal("0.05")

    # --- VIDEO MEETINGS (Whereby) ---
    WHEREBY_API_KEY: SecretStr
    WHEREBY_API_URL: str = "https://api.whereby.dev/v1"

    # Applies to every outbound gateway / provider call
    OUTBOUND_TIMEOUT_SECONDS: float = 10.0

    # Booking date/start/end are wall-clock values in this zone
    CLINIC_TIMEZONE: str = "Asia/Kolkata"

    SCHEDULER_POLL_INTERVAL_SECONDS: int = 60
    OUTBOX_POLL_INTERVAL_SECONDS: int = 5

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
