"""
core/config.py -- AuthFlow settings, read once from the environment.

Every environment variable the service understands is a field on Settings;
names map one-to-one (db_pool_size <-> DB_POOL_SIZE). A .env file in the
working directory is read as well. Other modules never touch os.environ;
they call get_settings().

get_settings() is wrapped in lru_cache, so the first call fixes the values
for the life of the process. Tests that change the environment call
get_settings.cache_clear().

DEBUG=true means development. Anything else means production:
  - SECRET_KEY must be set (development generates a throwaway one)
  - PostgreSQL connections require TLS
  - per-query log records drop to DEBUG
  - CORS allows only ALLOWED_ORIGIN instead of "*"

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or db/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

logger = logging.getLogger("authflow.config")

_DEV_DB_URL = "sqlite:///./authflow_dev.db"


class Settings(BaseSettings):
    """Every tunable of the service. Defaults describe a local development setup."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    # HS256 signing key for access tokens and the OAuth session cookie.
    # Never "" after validation.
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Tokens and passwords
    # ------------------------------------------------------------------

    token_issuer: str = "authflow-app"
    token_expire_seconds: int = 7 * 24 * 3600
    bcrypt_rounds: int = 10
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Database
    #
    # DATABASE_URL wins when set. Otherwise DB_HOST switches to discrete
    # PostgreSQL fields; with neither, a local SQLite file is used.
    # ------------------------------------------------------------------

    database_url: str = ""
    db_host: str = ""
    db_port: int = 5432
    db_name: str = "authflow_db"
    db_user: str = ""
    db_password: str = ""

    # One connection by default: serverless Postgres limits are per-process.
    db_pool_size: int = 1
    db_pool_timeout: float = 2.0
    db_connect_timeout: int = 10
    db_max_retries: int = 2
    db_retry_base_delay: float = 0.1

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Deployment origin allowed by CORS in production. Development allows "*".
    allowed_origin: str = ""
    allowed_hosts: list[str] = ["*"]
    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def production(self) -> bool:
        return not self.debug

    @property
    def resolved_database_url(self) -> str:
        """Return the SQLAlchemy URL for the users database.

        Heroku/Vercel style "postgres://" URLs are rewritten to the psycopg2
        dialect name SQLAlchemy expects.
        """
        if self.database_url:
            url = self.database_url
            if url.startswith("postgres://"):
                url = "postgresql+psycopg2://" + url[len("postgres://") :]
            elif url.startswith("postgresql://"):
                url = "postgresql+psycopg2://" + url[len("postgresql://") :]
            return url
        if self.db_host:
            return URL.create(
                "postgresql+psycopg2",
                username=self.db_user or None,
                password=self.db_password or None,
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
            ).render_as_string(hide_password=False)
        return _DEV_DB_URL

    @property
    def cors_origins(self) -> list[str]:
        if self.production:
            return [self.allowed_origin] if self.allowed_origin else []
        return ["*"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Fill in or reject SECRET_KEY.

        Unset in development: a random key is generated, so tokens issued
        before a restart stop verifying after it. Unset in production: startup
        fails. Set anywhere: it must be at least 32 characters.
        """
        if self.secret_key:
            if len(self.secret_key) < 32:
                raise ValueError("SECRET_KEY must be at least 32 characters.")
            return self
        if self.production:
            raise ValueError(
                "SECRET_KEY is required in production mode (DEBUG is not true). "
                "Set it in the environment or in .env."
            )
        self.secret_key = secrets.token_hex(32)
        logger.warning("SECRET_KEY not set; generated a temporary one for this process.")
        return self

    @model_validator(mode="after")
    def validate_pool(self) -> "Settings":
        if self.db_pool_size < 1:
            raise ValueError("DB_POOL_SIZE must be at least 1.")
        if self.db_max_retries < 0:
            raise ValueError("DB_MAX_RETRIES cannot be negative.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
