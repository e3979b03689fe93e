import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        auth_max_age_secs: int,
        llm_api_key: Optional[str],
        llm_base_url: str,
        llm_model: str,
        llm_timeout_secs: float,
        llm_rate_limit_secs: float,
        stripe_secret_key: Optional[str],
        stripe_webhook_secret: Optional[str],
        stripe_basic_price_id: Optional[str],
        stripe_pro_price_id: Optional[str],
        insight_ttl_days: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.auth_max_age_secs = auth_max_age_secs
        self.llm_api_key = llm_api_key
        self.llm_base_url = llm_base_url
        self.llm_model = llm_model
        self.llm_timeout_secs = llm_timeout_secs
        self.llm_rate_limit_secs = llm_rate_limit_secs
        self.stripe_secret_key = stripe_secret_key
        self.stripe_webhook_secret = stripe_webhook_secret
        self.stripe_basic_price_id = stripe_basic_price_id
        self.stripe_pro_price_id = stripe_pro_price_id
        self.insight_ttl_days = insight_ttl_days


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "UTC")
    auth_secret = os.getenv(
        "FINANCE_AUTH_SECRET",
        "3f9c0d7b1e2a4c6f8a0b2d4e6f8091a3c5e7f9b1d3f5a7c9e1b3d5f7a9c1e3f5",
    )
    auth_max_age_secs = int(os.getenv("FINANCE_AUTH_MAX_AGE_SECS", str(12 * 3600)))
    llm_api_key = os.getenv("FINANCE_LLM_API_KEY") or os.getenv("GROK_API_KEY")
    llm_base_url = os.getenv("FINANCE_LLM_BASE_URL", "https://api.x.ai/v1")
    llm_model = os.getenv("FINANCE_LLM_MODEL", "grok-2-1212")
    llm_timeout_secs = float(os.getenv("FINANCE_LLM_TIMEOUT_SECS", "30"))
    llm_rate_limit_secs = float(os.getenv("FINANCE_LLM_RATE_LIMIT_SECS", "1"))
    insight_ttl_days = int(os.getenv("FINANCE_INSIGHT_TTL_DAYS", "7"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        auth_max_age_secs=auth_max_age_secs,
        llm_api_key=llm_api_key or None,
        llm_base_url=llm_base_url,
        llm_model=llm_model,
        llm_timeout_secs=llm_timeout_secs,
        llm_rate_limit_secs=llm_rate_limit_secs,
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        stripe_basic_price_id=os.getenv("STRIPE_BASIC_PRICE_ID") or None,
        stripe_pro_price_id=os.getenv("STRIPE_PRO_PRICE_ID") or None,
        insight_ttl_days=insight_ttl_days,
    )
