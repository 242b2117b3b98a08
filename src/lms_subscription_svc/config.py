from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Runtime configuration. Every field can be overridden by the environment
    variable of the same name in upper case (``STRIPE_API_KEY``, ``JWT_EXPIRE_DAYS``, ...).
    """
    stripe_api_key: Optional[str] = None
    stripe_endpoint_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    frontend_base_url: str = "http://localhost:3000"
    database_url: str = "sqlite:///./lms_subscriptions.db"
    jwt_secret: str = "dev-jwt-secret-change-me"
    jwt_expire_days: int = 7
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def success_url(self) -> str:
        return f"{self.frontend_base_url.rstrip('/')}/parent/signup/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def cancel_url(self) -> str:
        return f"{self.frontend_base_url.rstrip('/')}/parent/signup/cancel"


def get_settings() -> Settings:
    # Built per call so tests and reloads see the current environment.
    return Settings()
