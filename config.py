import os

from dotenv import load_dotenv

load_dotenv()


class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis (Celery broker + shared dedup store) ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    DEDUP_BACKEND = os.environ.get("DEDUP_BACKEND", "memory")  # "memory" | "redis"

    # --- Email (Resend) ---
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY")
    EMAIL_FROM = os.environ.get("EMAIL_FROM", "EchoVault <notifications@echo-vault.app>")
    EMAIL_TIMEOUT = int(os.environ.get("EMAIL_TIMEOUT", "10"))

    # --- Telnyx (WhatsApp) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_WHATSAPP_NUMBER = os.environ.get("TELNYX_WHATSAPP_NUMBER")

    # --- Public links ---
    APP_NAME = os.environ.get("APP_NAME", "EchoVault")
    APP_DOMAIN = os.environ.get("APP_DOMAIN", "echo-vault.app")

    # --- Scheduling cadence (Celery beat) ---
    EVALUATOR_INTERVAL_SECONDS = float(os.environ.get("EVALUATOR_INTERVAL_SECONDS", "60"))
    REMINDER_INTERVAL_SECONDS = float(os.environ.get("REMINDER_INTERVAL_SECONDS", "60"))

    # --- Delivery tuning ---
    EMAIL_RETRY_DELAY_SECONDS = float(os.environ.get("EMAIL_RETRY_DELAY_SECONDS", "5"))
    NOTIFICATION_DEDUP_SECONDS = float(os.environ.get("NOTIFICATION_DEDUP_SECONDS", "300"))
    PANIC_DEDUP_SECONDS = float(os.environ.get("PANIC_DEDUP_SECONDS", "30"))
    PANIC_DEDUP_PURGE_SECONDS = float(os.environ.get("PANIC_DEDUP_PURGE_SECONDS", "60"))


settings = Settings()
