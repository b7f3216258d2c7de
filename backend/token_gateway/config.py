import hashlib
import hmac
from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Token server settings, read from the environment (and `.env`)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    env: str = "development"
    commit_sha: str = "unknown"

    # HighLevel OAuth app
    hl_client_id: str = ""
    hl_client_secret: SecretStr = SecretStr("")
    redirect_uri: str = "http://localhost:8000/oauth/callback"
    hl_api_base: str = "https://services.leadconnectorhq.com"
    hl_auth_base: str = "https://marketplace.leadconnectorhq.com"
    hl_api_version: str = "2021-07-28"
    hl_scopes: str = "locations.readonly contacts.readonly contacts.write opportunities.readonly calendars.readonly"

    database_url: str = "sqlite:///./token_gateway.db"

    # Security
    encryption_key: SecretStr = SecretStr("")
    s2s_shared_secret: SecretStr = SecretStr("")
    s2s_issuer: str = "api-server"
    s2s_audience: str = "oauth-server"
    s2s_max_lifetime_s: int = 300

    # Replay guard
    state_ttl_min: int = 20
    code_ttl_min: int = 10
    oauth_require_state: bool = True
    state_cookie_name: str = "hl_oauth_state"
    # signs the state fallback cookie; derived from S2S_SHARED_SECRET when empty
    state_cookie_secret: SecretStr = SecretStr("")

    # Rate limiting (fixed 15 minute windows, per client ip)
    rate_limit_enabled: bool = True
    rate_limit_window_s: int = 900
    rate_limit_max: int = 0
    rate_limit_strict_max: int = 20

    # Token lifecycle
    refresh_safety_window_s: int = 300
    refresher_enabled: bool = True
    refresh_interval_s: int = 3600
    refresh_lookahead_s: int = 3600
    refresh_cooldown_s: int = 600

    # Outbound timeouts (seconds)
    token_timeout_s: float = 15.0
    introspection_timeout_s: float = 10.0
    proxy_timeout_s: float = 30.0

    # Comma-separated glob patterns, e.g. "/contacts/*,/users/*"
    proxy_extra_allowed: str = ""

    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def extra_allowed_patterns(self) -> list[str]:
        return [p.strip() for p in self.proxy_extra_allowed.split(",") if p.strip()]

    @property
    def state_cookie_key(self) -> str:
        explicit = self.state_cookie_secret.get_secret_value()
        if explicit:
            return explicit
        shared = self.s2s_shared_secret.get_secret_value()
        if not shared:
            return ""
        return hmac.new(shared.encode(), b"hl-oauth-state-cookie", hashlib.sha256).hexdigest()

    @property
    def global_rate_limit(self) -> int:
        if self.rate_limit_max:
            return self.rate_limit_max
        return 100 if self.is_production else 1000

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    def require(self) -> list[str]:
        """Return the names of mandatory settings that are still empty."""
        missing = []
        if not self.hl_client_id:
            missing.append("HL_CLIENT_ID")
        if not self.hl_client_secret.get_secret_value():
            missing.append("HL_CLIENT_SECRET")
        if not self.redirect_uri:
            missing.append("REDIRECT_URI")
        if not self.encryption_key.get_secret_value():
            missing.append("ENCRYPTION_KEY")
        if not self.s2s_shared_secret.get_secret_value():
            missing.append("S2S_SHARED_SECRET")
        return missing


@lru_cache
def get_settings() -> Settings:
    return Settings()
