from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # None selects the in-process fallback store.
    database_url: str | None = None
    local_store_path: str | None = None  # JSON file for the fallback store; None keeps it in memory
    default_tz: str = "UTC"
    api_key: str | None = None

    # Owner used when a request carries no X-Owner-Id header.
    default_owner_id: str = "demo-student"

    # Reconciler cadences
    fast_tick_seconds: float = 1.0  # in-memory progress refresh
    slow_tick_seconds: float = 30.0  # durable writes
    stop_grace_seconds: float = 5.0  # wait for an in-flight write on stop

    # History
    history_max_entries: int = 100  # per goal, older snapshots pruned
    history_default_limit: int = 30

    model_config = {"env_file": ".env", "env_prefix": "GOALSYNC_", "extra": "ignore"}


settings = Settings()
