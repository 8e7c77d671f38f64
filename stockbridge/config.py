import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///stockbridge.sqlite3")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

STORE_ORDER_STATUSES = ("completed", "processing")
STORE_PAGE_SIZE = 100
POS_PAGE_SIZE = 50


def _parse_overrides(raw: str) -> dict[str, int]:
    """Parse ``SKU=variation_id`` pairs separated by commas."""
    out: dict[str, int] = {}
    for pair in (raw or "").split(","):
        pair = pair.strip()
        if not pair:
            continue
        sku, _, vid = pair.partition("=")
        if not sku.strip() or not vid.strip().isdigit():
            raise ConfigurationError(f"Bad POS_VARIANT_OVERRIDES entry: {pair!r}")
        out[sku.strip()] = int(vid.strip())
    return out


@dataclass(frozen=True)
class Settings:
    connection_id: str = "default"

    store_url: str | None = None
    store_consumer_key: str | None = None
    store_consumer_secret: str | None = None
    store_price_decimals: int = 2

    pos_api_url: str = "https://api.prokip.africa"
    pos_token: str | None = None
    pos_location_id: str | None = None
    pos_price_decimals: int = 4
    pos_stock_write_mode: str = "sale"   # "sale" | "stock"
    pos_invoice_prefix: str = "WC-"
    pos_contact_id: int = 1      # walk-in customer
    pos_variant_overrides: dict[str, int] = field(default_factory=dict)

    window_days: int = 7
    http_timeout: float = 15.0
    lock_timeout: float = 30.0
    lock_stale_after: float = 3600.0


def load_settings() -> Settings:
    mode = os.getenv("POS_STOCK_WRITE_MODE", "sale").lower()
    if mode not in ("sale", "stock"):
        raise ConfigurationError(f"POS_STOCK_WRITE_MODE must be 'sale' or 'stock', got {mode!r}")
    try:
        return Settings(
            connection_id=os.getenv("CONNECTION_ID", "default"),
            store_url=(os.getenv("STORE_URL") or "").rstrip("/") or None,
            store_consumer_key=os.getenv("STORE_CONSUMER_KEY"),
            store_consumer_secret=os.getenv("STORE_CONSUMER_SECRET"),
            store_price_decimals=int(os.getenv("STORE_PRICE_DECIMALS", "2")),
            pos_api_url=os.getenv("POS_API_URL", "https://api.prokip.africa").rstrip("/"),
            pos_token=os.getenv("POS_TOKEN"),
            pos_location_id=os.getenv("POS_LOCATION_ID"),
            pos_price_decimals=int(os.getenv("POS_PRICE_DECIMALS", "4")),
            pos_stock_write_mode=mode,
            pos_invoice_prefix=os.getenv("POS_INVOICE_PREFIX", "WC-"),
            pos_contact_id=int(os.getenv("POS_CONTACT_ID", "1")),
            pos_variant_overrides=_parse_overrides(os.getenv("POS_VARIANT_OVERRIDES", "")),
            window_days=int(os.getenv("SYNC_WINDOW_DAYS", "7")),
            http_timeout=float(os.getenv("HTTP_TIMEOUT", "15")),
            lock_timeout=float(os.getenv("SYNC_LOCK_TIMEOUT", "30")),
            lock_stale_after=float(os.getenv("SYNC_LOCK_STALE_AFTER", "3600")),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e


def require_credentials(settings: Settings):
    """Raise ConfigurationError listing every missing credential for both platforms."""
    missing = []
    if not settings.store_url:
        missing.append("STORE_URL")
    if not settings.store_consumer_key:
        missing.append("STORE_CONSUMER_KEY")
    if not settings.store_consumer_secret:
        missing.append("STORE_CONSUMER_SECRET")
    if not settings.pos_token:
        missing.append("POS_TOKEN")
    if not settings.pos_location_id:
        missing.append("POS_LOCATION_ID")
    if missing:
        raise ConfigurationError(f"Missing configuration: {', '.join(missing)}")
