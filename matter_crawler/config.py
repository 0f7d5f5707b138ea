from __future__ import annotations

from dataclasses import dataclass, field, asdict, fields, replace
from typing import Optional, Dict, Any
from pathlib import Path
import os
import json

from .errors import ConfigError
from .version import __version__, CONFIG_SCHEMA_VERSION

BASE_URL = "https://csa-iot.org/csa-iot_products/"
MATTER_FILTER_URL = (
    "https://csa-iot.org/csa-iot_products/"
    "?p_keywords=&p_type%5B%5D=14&p_program_type%5B%5D=1049&p_certificate=&p_family=&p_firmware_ver="
)

ZERO_RESULT_POLICIES = ("error", "allow_last_page", "allow")


@dataclass
class CrawlConfig:
    """
    Canonical configuration object passed throughout the system.
    Resolved once per run; the engine never mutates it.
    Durations are in seconds.
    """
    schema_version: int = CONFIG_SCHEMA_VERSION
    base_url: str = BASE_URL
    filter_url: str = MATTER_FILTER_URL
    page_timeout: float = 30.0
    detail_timeout: float = 30.0
    products_per_page: int = 12
    initial_concurrency: int = 9
    detail_concurrency: int = 9
    retry_concurrency: int = 6
    min_request_delay: float = 0.1
    max_request_delay: float = 2.2
    # First retry round is attempt 2; the initial pass is attempt 1.
    retry_start: int = 2
    retry_max: int = 10
    cache_ttl: float = 300.0
    # 0 means no cap on the number of list pages per run.
    page_range_limit: int = 0
    # Large list ranges run in batches of batch_size pages with a pause between them.
    enable_batch_processing: bool = True
    batch_size: int = 30
    batch_delay: float = 2.0
    zero_result_policy: str = "error"
    # Extra neighbour pages added on each side of a gap range in extended collection.
    extended_margin: int = 1
    # Missing site pages closer than this are merged into one recommended range.
    gap_merge_distance: int = 0
    user_agent: str = f"matter_crawler/{__version__}"
    # Dotted paths for fetcher/exporter to allow runtime swapping without code changes.
    fetcher: str = "matter_crawler.adapters.catalog:CatalogPageFetcher"
    exporter: str = "matter_crawler.export.json_exporter:JSONExporter"
    output_dir: str = "dist-output"
    database_path: str = "data/matter-products.sqlite"
    # Persist detail records to the store after a completed run.
    auto_save: bool = True
    log_level: str = "INFO"
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def with_overrides(self, **overrides: Any) -> "CrawlConfig":
        """Return a copy with the non-None overrides applied."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(clean) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return replace(self, **clean)

    # ---------- Loaders ----------

    @classmethod
    def from_env(cls) -> "CrawlConfig":
        """
        Build config from MATTER_CRAWLER_* environment variables (all optional).
        """
        defaults = cls()

        def _get(name: str, default: Any) -> str:
            return os.getenv(f"MATTER_CRAWLER_{name}", str(default))

        return cls(
            base_url=_get("BASE_URL", defaults.base_url),
            filter_url=_get("FILTER_URL", defaults.filter_url),
            page_timeout=float(_get("PAGE_TIMEOUT", defaults.page_timeout)),
            detail_timeout=float(_get("DETAIL_TIMEOUT", defaults.detail_timeout)),
            products_per_page=int(_get("PRODUCTS_PER_PAGE", defaults.products_per_page)),
            initial_concurrency=int(_get("INITIAL_CONCURRENCY", defaults.initial_concurrency)),
            detail_concurrency=int(_get("DETAIL_CONCURRENCY", defaults.detail_concurrency)),
            retry_concurrency=int(_get("RETRY_CONCURRENCY", defaults.retry_concurrency)),
            min_request_delay=float(_get("MIN_REQUEST_DELAY", defaults.min_request_delay)),
            max_request_delay=float(_get("MAX_REQUEST_DELAY", defaults.max_request_delay)),
            retry_start=int(_get("RETRY_START", defaults.retry_start)),
            retry_max=int(_get("RETRY_MAX", defaults.retry_max)),
            cache_ttl=float(_get("CACHE_TTL", defaults.cache_ttl)),
            page_range_limit=int(_get("PAGE_RANGE_LIMIT", defaults.page_range_limit)),
            enable_batch_processing=_get("ENABLE_BATCH_PROCESSING", "1").lower() not in ("0", "false", "no"),
            batch_size=int(_get("BATCH_SIZE", defaults.batch_size)),
            batch_delay=float(_get("BATCH_DELAY", defaults.batch_delay)),
            zero_result_policy=_get("ZERO_RESULT_POLICY", defaults.zero_result_policy),
            extended_margin=int(_get("EXTENDED_MARGIN", defaults.extended_margin)),
            gap_merge_distance=int(_get("GAP_MERGE_DISTANCE", defaults.gap_merge_distance)),
            user_agent=_get("USER_AGENT", defaults.user_agent),
            fetcher=_get("FETCHER", defaults.fetcher),
            exporter=_get("EXPORTER", defaults.exporter),
            output_dir=_get("OUTPUT_DIR", defaults.output_dir),
            database_path=_get("DATABASE_PATH", defaults.database_path),
            auto_save=_get("AUTO_SAVE", "1").lower() not in ("0", "false", "no"),
            log_level=_get("LOG_LEVEL", defaults.log_level),
        )

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> "CrawlConfig":
        """
        Load configuration from a JSON file. Older schema versions are migrated first.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        data = migrate_config(data)
        known = {f.name for f in fields(cls)}
        extra = {k: data.pop(k) for k in list(data) if k not in known}
        cfg = cls(**data)
        cfg.extra.update(extra)
        return cfg

    # ---------- Validation ----------

    def validate(self) -> None:
        for name in ("initial_concurrency", "detail_concurrency", "retry_concurrency", "products_per_page"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.page_timeout <= 0 or self.detail_timeout <= 0:
            raise ConfigError("page_timeout and detail_timeout must be > 0")
        if self.min_request_delay < 0:
            raise ConfigError("min_request_delay must be >= 0")
        if self.max_request_delay < self.min_request_delay:
            raise ConfigError("max_request_delay must be >= min_request_delay")
        if self.retry_start < 2:
            raise ConfigError("retry_start must be >= 2 (attempt 1 is the initial pass)")
        # retry_max == retry_start - 1 disables retry rounds entirely.
        if self.retry_max < self.retry_start - 1:
            raise ConfigError("retry_max must be >= retry_start - 1")
        if self.page_range_limit < 0:
            raise ConfigError("page_range_limit must be >= 0")
        if self.batch_size <= 0 or self.batch_delay < 0:
            raise ConfigError("batch_size must be > 0 and batch_delay >= 0")
        if self.extended_margin < 0 or self.gap_merge_distance < 0:
            raise ConfigError("extended_margin and gap_merge_distance must be >= 0")
        if self.zero_result_policy not in ZERO_RESULT_POLICIES:
            raise ConfigError(
                f"zero_result_policy must be one of {', '.join(ZERO_RESULT_POLICIES)}"
            )
        Path(self.output_dir).mkdir(parents=True, exist_ok=True)


# Schema 1 keys that held milliseconds, mapped to their schema 2 names.
_MS_KEYS = {
    "page_timeout_ms": "page_timeout",
    "detail_timeout_ms": "detail_timeout",
    "min_request_delay_ms": "min_request_delay",
    "max_request_delay_ms": "max_request_delay",
    "batch_delay_ms": "batch_delay",
    "cache_ttl_ms": "cache_ttl",
}


def migrate_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Migrate config dict to the latest schema version.
    Keep this pure and additive. Add migrations here as you bump schema.
    """
    data = dict(raw)
    schema = data.get("schema_version", 1)

    if schema == 1:
        for old, new in _MS_KEYS.items():
            if old in data:
                data[new] = float(data.pop(old)) / 1000.0
        schema = 2

    if schema > CONFIG_SCHEMA_VERSION:
        raise ConfigError(f"Config schema {schema} is newer than supported ({CONFIG_SCHEMA_VERSION})")

    data["schema_version"] = CONFIG_SCHEMA_VERSION
    return data


def load_config(path: Optional[str] = None) -> CrawlConfig:
    """Config from a JSON file when a path is given, else from the environment."""
    return CrawlConfig.from_file(path) if path else CrawlConfig.from_env()
