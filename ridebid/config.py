from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/ridebid"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    # routing service (distance provider)
    ROUTING_SERVICE_URL: str = "http://127.0.0.1:8001"
    ROUTING_TIMEOUT_SEC: float = 5.0
    DISTANCE_CACHE_TTL_SEC: int = 3600

    # payment gateway; leave unset to use the simulated gateway
    PAYMENT_SERVICE_URL: Optional[str] = None
    PAYMENT_TIMEOUT_SEC: float = 10.0
    PAYMENT_MAX_ATTEMPTS: int = 3
    COLLECT_PAYMENT_ON_ACCEPT: bool = True

    LOG_FILE: str = "ridebid.log"
    LOG_LEVEL: str = "INFO"

    MAX_NEGOTIATION_ROUNDS: int = 5
    DEFAULT_MARKET: str = "default"
    # overrides for PricingSettings defaults, e.g. {"base_price_per_mile": 3.0}
    PRICING_DEFAULTS: dict = {}

    # Load .env located next to this file (ridebid/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}


def load_settings() -> Settings:
    """Load settings from application.yaml and merge with environment variables."""
    config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
            if yaml_config:
                # Map YAML structure to Settings fields
                if "database" in yaml_config:
                    db = yaml_config["database"]
                    config_dict["DATABASE_URL"] = db.get("url")
                    config_dict["DB_POOL_SIZE"] = db.get("pool_size")
                    config_dict["DB_MAX_OVERFLOW"] = db.get("max_overflow")
                    config_dict["DB_POOL_TIMEOUT"] = db.get("pool_timeout")
                    config_dict["DB_POOL_RECYCLE"] = db.get("pool_recycle")
                    config_dict["DB_ECHO"] = db.get("echo")

                if "redis" in yaml_config:
                    config_dict["REDIS_URL"] = yaml_config["redis"].get("url")

                if "routing" in yaml_config:
                    routing = yaml_config["routing"]
                    config_dict["ROUTING_SERVICE_URL"] = routing.get("url")
                    config_dict["ROUTING_TIMEOUT_SEC"] = routing.get("timeout_sec")
                    config_dict["DISTANCE_CACHE_TTL_SEC"] = routing.get("cache_ttl_sec")

                if "payments" in yaml_config:
                    pay = yaml_config["payments"]
                    config_dict["PAYMENT_SERVICE_URL"] = pay.get("url")
                    config_dict["PAYMENT_TIMEOUT_SEC"] = pay.get("timeout_sec")
                    config_dict["PAYMENT_MAX_ATTEMPTS"] = pay.get("max_attempts")
                    config_dict["COLLECT_PAYMENT_ON_ACCEPT"] = pay.get("collect_on_accept")

                if "logging" in yaml_config:
                    log = yaml_config["logging"]
                    config_dict["LOG_FILE"] = log.get("file")
                    config_dict["LOG_LEVEL"] = log.get("level")

                if "bidding" in yaml_config:
                    config_dict["MAX_NEGOTIATION_ROUNDS"] = yaml_config["bidding"].get("max_rounds")

                if "pricing" in yaml_config:
                    pricing = dict(yaml_config["pricing"] or {})
                    config_dict["DEFAULT_MARKET"] = pricing.pop("market", None)
                    config_dict["PRICING_DEFAULTS"] = pricing

    # Create Settings with YAML values, but allow env vars to override
    return Settings(**{k: v for k, v in config_dict.items() if v is not None})


settings = load_settings()
