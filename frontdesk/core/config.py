from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

from frontdesk.models.checkout import CheckoutConfig
from frontdesk.models.payment import PaymentMethod

class Settings(BaseSettings):
    # Logging
    LOG_LEVEL: str = "INFO"

    # API Settings
    PROJECT_NAME: str = "Frontdesk Folio API"
    API_V1_STR: str = "/api/v1"
    PROJECT_VERSION: str = "0.1.0"
    DESCRIPTION: str = "Folio charge distribution and checkout settlement"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Folio backend (charges, payments, closures are owned there).
    # "memory" runs against an in-process backend for local development.
    FOLIO_BACKEND: str = "http"
    BACKEND_API_URL: str = "http://localhost:8080/api"
    BACKEND_API_TOKEN: str = ""
    BACKEND_TIMEOUT_SECONDS: float = 30.0

    # MongoDB (idempotency records). Empty URL keeps records in memory.
    MONGODB_URL: str = ""
    DATABASE_NAME: str = "frontdesk"
    IDEMPOTENCY_TTL_HOURS: int = 24

    # Checkout rules
    ALLOW_OUTSTANDING_BALANCE: bool = False
    REQUIRE_FULL_DISTRIBUTION: bool = False
    CHECK_DISTRIBUTION: bool = True
    SETTLE_OUTSTANDING_BALANCE: bool = True
    DEFAULT_PAYMENT_METHOD: PaymentMethod = PaymentMethod.CARD

    # CORS (front-desk UI)
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # History
    HISTORY_PAGE_SIZE: int = 20

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env"
    )

    def checkout_config(self) -> CheckoutConfig:
        """Default checkout rules for the desk."""
        return CheckoutConfig(
            allow_outstanding_balance=self.ALLOW_OUTSTANDING_BALANCE,
            require_full_distribution=self.REQUIRE_FULL_DISTRIBUTION,
            check_distribution=self.CHECK_DISTRIBUTION,
            settle_outstanding_balance=self.SETTLE_OUTSTANDING_BALANCE,
            payment_method=self.DEFAULT_PAYMENT_METHOD,
        )

settings = Settings()
