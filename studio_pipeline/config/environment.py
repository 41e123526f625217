"""Environment variable loading and validation.

Secrets and deployment-specific values live in the environment (or a .env
file loaded by python-dotenv at startup), never in config.yaml.
"""

import os
from typing import Optional

from pydantic import EmailStr, TypeAdapter, ValidationError

from .exceptions import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///./data/studio_pipeline.db"

_email_adapter = TypeAdapter(EmailStr)


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        log_level: Optional[str] = None,
        environment: Optional[str] = None,
        union_api_token: Optional[str] = None,
        union_base_url: Optional[str] = None,
        shopify_store_domain: Optional[str] = None,
        shopify_access_token: Optional[str] = None,
        inbox_host: Optional[str] = None,
        inbox_port: int = 993,
        inbox_user: Optional[str] = None,
        inbox_password: Optional[str] = None,
    ):
        self.database_url = database_url or DEFAULT_DATABASE_URL
        self.log_level = log_level
        self.environment = environment or "local"
        self.union_api_token = union_api_token
        self.union_base_url = union_base_url
        self.shopify_store_domain = shopify_store_domain
        self.shopify_access_token = shopify_access_token
        self.inbox_host = inbox_host
        self.inbox_port = inbox_port
        self.inbox_user = inbox_user
        self.inbox_password = inbox_password

    @property
    def has_inbox_credentials(self) -> bool:
        return bool(self.inbox_host and self.inbox_user and self.inbox_password)

    @property
    def has_shopify_credentials(self) -> bool:
        return bool(self.shopify_store_domain and self.shopify_access_token)


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    All variables are optional; a source whose credentials are missing is
    reported as a failed category at run time rather than blocking startup.

    Variables:
    - DATABASE_URL: SQLAlchemy URL (default: sqlite:///./data/studio_pipeline.db)
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - ENVIRONMENT: Environment label attached to logs (default: local)
    - UNION_API_TOKEN / UNION_BASE_URL: Union.fit report API access
    - SHOPIFY_STORE_DOMAIN / SHOPIFY_ACCESS_TOKEN: Shopify Admin API access
    - REPORT_INBOX_HOST / REPORT_INBOX_PORT / REPORT_INBOX_USER /
      REPORT_INBOX_PASSWORD: IMAP inbox receiving emailed reports

    Returns:
        EnvironmentConfig object with validated values

    Raises:
        ConfigurationError: If any provided variable is invalid or a
            credential pair is only half set
    """
    errors = []

    log_level = os.getenv("LOG_LEVEL")
    shopify_store_domain = os.getenv("SHOPIFY_STORE_DOMAIN")
    shopify_access_token = os.getenv("SHOPIFY_ACCESS_TOKEN")
    inbox_user = os.getenv("REPORT_INBOX_USER")
    inbox_password = os.getenv("REPORT_INBOX_PASSWORD")
    inbox_port_str = os.getenv("REPORT_INBOX_PORT")

    if log_level:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_level.upper() not in valid_levels:
            errors.append(
                f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(valid_levels)}"
            )
        else:
            log_level = log_level.upper()

    inbox_port = 993
    if inbox_port_str:
        try:
            inbox_port = int(inbox_port_str)
            if not 1 <= inbox_port <= 65535:
                errors.append(f"Invalid REPORT_INBOX_PORT: {inbox_port}. Must be between 1 and 65535.")
        except ValueError:
            errors.append(f"Invalid REPORT_INBOX_PORT: '{inbox_port_str}'. Must be a valid integer.")

    if inbox_user:
        try:
            _email_adapter.validate_python(inbox_user)
        except ValidationError:
            errors.append(f"Invalid email address format in REPORT_INBOX_USER: '{inbox_user}'")

    if bool(inbox_user) != bool(inbox_password):
        errors.append("REPORT_INBOX_USER and REPORT_INBOX_PASSWORD must be set together.")

    if bool(shopify_store_domain) != bool(shopify_access_token):
        errors.append("SHOPIFY_STORE_DOMAIN and SHOPIFY_ACCESS_TOKEN must be set together.")

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and fill in your credentials",
                "Set credential pairs together or leave both unset",
            ],
        )

    return EnvironmentConfig(
        database_url=os.getenv("DATABASE_URL"),
        log_level=log_level,
        environment=os.getenv("ENVIRONMENT"),
        union_api_token=os.getenv("UNION_API_TOKEN"),
        union_base_url=os.getenv("UNION_BASE_URL"),
        shopify_store_domain=shopify_store_domain,
        shopify_access_token=shopify_access_token,
        inbox_host=os.getenv("REPORT_INBOX_HOST"),
        inbox_port=inbox_port,
        inbox_user=inbox_user,
        inbox_password=inbox_password,
    )
