import os
from typing import List

TAX_MODES = {"additive", "inclusive"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/pos')
        # Comma-separated list of allowed CORS origins for the SPA.
        # Default keeps local dev working out of the box.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Checkout screens historically disagreed on how tax is applied; the
        # mode is explicit and defaults to tax added on top of the discounted total.
        mode = (os.getenv("CHECKOUT_TAX_MODE") or "additive").strip().lower()
        self.checkout_tax_mode = mode if mode in TAX_MODES else "additive"

        self.stripe_secret_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
        self.billing_run_interval_seconds = self._env_int("BILLING_RUN_INTERVAL_SECONDS", 3600)
        # Shared by every API worker so cache invalidation reaches all of them.
        self.redis_url = (os.getenv("REDIS_URL") or "redis://localhost:6379/0").strip()
        self.plan_cache_ttl_seconds = self._env_int("PLAN_CACHE_TTL_SECONDS", 300)

settings = Settings()
