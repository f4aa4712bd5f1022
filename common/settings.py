import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # TapPay gateway
    tappay_api: str = os.getenv("TAPPAY_API", "https://sandbox.tappaysdk.com/tpc/payment/pay-by-prime")
    partner_key: str = os.getenv("PARTNER_KEY", "")
    merchant_id: str = os.getenv("MERCHANT_ID", "")
    currency: str = os.getenv("CURRENCY", "TWD")
    gateway_timeout_seconds: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))

    # Settlement queue
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    queue_name: str = os.getenv("QUEUE_NAME", "tappay-payments")
    workers: int = int(os.getenv("WORKERS", "5"))
    job_attempts: int = int(os.getenv("JOB_ATTEMPTS", "3"))
    job_backoff_ms: int = int(os.getenv("JOB_BACKOFF_MS", "1000"))
    job_timeout_ms: int = int(os.getenv("JOB_TIMEOUT_MS", "10000"))
    worker_poll_interval: float = float(os.getenv("WORKER_POLL_INTERVAL", "0.5"))

    # Donation storage
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "giving")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    # Admin read
    google_secret: str = os.getenv("GOOGLE_SECRET", "")

    # Confirmation email
    google_sender_email: str = os.getenv("GOOGLE_SENDER_EMAIL", "")
    google_app_password: str = os.getenv("GOOGLE_APP_PASSWORD", "")
    giving_email_banner_path: str = os.getenv("GIVING_EMAIL_BANNER_PATH", "")
    giving_email_template_path: str = os.getenv("GIVING_EMAIL_TEMPLATE_PATH", "")
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "465"))
    notification_workers: int = int(os.getenv("NOTIFICATION_WORKERS", "2"))

    # Front door
    allowed_origin: str = os.getenv("ALLOWED_ORIGIN", "http://localhost:3000")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    local_timezone: str = os.getenv("LOCAL_TIMEZONE", "Asia/Taipei")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}?charset=utf8mb4"

settings = Settings()
