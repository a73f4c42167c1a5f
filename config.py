from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from the environment and an optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field("mongodb://localhost:27017", alias="DATABASE_URL")
    database_name: str = Field("style_decor_DB", alias="DATABASE_NAME")

    stripe_secret_key: str = Field("", alias="STRIPE_SECRET_KEY")
    payment_currency: str = Field("usd", alias="PAYMENT_CURRENCY")
    client_url: str = Field("http://localhost:5173", alias="CLIENT_URL")

    # HMAC secret or PEM public key, depending on the algorithms
    auth_token_secret: str = Field("", alias="AUTH_TOKEN_SECRET")
    auth_token_algorithms: str = Field("HS256", alias="AUTH_TOKEN_ALGORITHMS")
    auth_token_audience: Optional[str] = Field(None, alias="AUTH_TOKEN_AUDIENCE")

    # Firebase ID tokens; when set, takes precedence over AUTH_TOKEN_SECRET
    firebase_project_id: str = Field("", alias="FIREBASE_PROJECT_ID")
    firebase_jwks_url: str = Field(
        "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com",
        alias="FIREBASE_JWKS_URL",
    )

    cors_origins: str = Field("*", alias="CORS_ORIGINS")
    strict_price_parsing: bool = Field(False, alias="STRICT_PRICE_PARSING")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    port: int = Field(8000, alias="PORT")

    @property
    def algorithms(self) -> List[str]:
        return [a.strip() for a in self.auth_token_algorithms.split(",") if a.strip()]

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
