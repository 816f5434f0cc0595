import secrets

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Shopify (order record store + webhook source)
    shopify_shop_domain: str = ""
    shopify_api_version: str = "2025-01"
    shopify_access_token: str = ""
    shopify_webhook_secret: str = ""
    metafield_namespace: str = "custom"
    variant_plan_field: str = "maya_plan_id"  # Variant metafield holding the plan type id
    variant_action_field: str = "type_de_produit"  # Variant metafield holding the action kind
    variant_cache_ttl: int = 300  # seconds
    order_search_page_size: int = 100
    order_search_max_pages: int = 10

    # Maya Connectivity (provisioning provider)
    provisioning_provider: str = "maya"
    maya_base_url: str = "https://api.maya.net"
    maya_auth: str = ""  # base64("api_key:api_secret") for HTTP Basic auth

    # Email (notifier)
    email_api_url: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from: str = ""
    ops_email: str = ""  # Recipient of escalation emails

    # Fulfillment
    lock_ttl_seconds: int = 900  # 15 minutes
    default_country_code: str = "US"
    trace_tag_prefix: str = "shopify-order"

    # Usage alerts
    cron_token: str = ""
    usage_alert_threshold: int = 80  # percent
    usage_lookback_days: int = 120

    # Rate Limiting
    rate_limit_requests: int = 100  # requests per window
    rate_limit_window: str = "minute"  # second, minute, hour, day
    job_rate_limit: str = "10/minute"  # Job trigger endpoints

    # Retry Settings
    retry_max_attempts: int = 3
    retry_min_wait: float = 1.0  # seconds
    retry_max_wait: float = 10.0  # seconds
    retry_multiplier: float = 2.0  # exponential backoff multiplier

    # Circuit Breaker
    circuit_breaker_threshold: int = 5  # failures before opening
    circuit_breaker_timeout: float = 60.0  # seconds before half-open

    # HTTP Client
    http_timeout: float = 15.0
    http_max_connections: int = 20
    http_max_keepalive: int = 10

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def shopify_graphql_url(self) -> str:
        """Admin GraphQL endpoint for the configured shop."""
        shop = self.shopify_shop_domain.strip()
        version = self.shopify_api_version.strip()
        return f"https://{shop}/admin/api/{version}/graphql.json"

    def is_valid_cron_token(self, token: str | None) -> bool:
        """Check a usage-scan trigger token in constant time."""
        if not token or not self.cron_token:
            return False
        return secrets.compare_digest(token.strip(), self.cron_token.strip())

    @staticmethod
    def generate_token() -> str:
        """Generate a new secure trigger token."""
        return secrets.token_urlsafe(32)


settings = Settings()
