"""Tests for CrawlConfig loading, overrides and validation."""

import json

import pytest

from matter_crawler.config import CrawlConfig, load_config, migrate_config
from matter_crawler.errors import ConfigError
from matter_crawler.version import CONFIG_SCHEMA_VERSION


class TestCrawlConfig:
    """Test cases for CrawlConfig."""

    def test_defaults(self):
        cfg = CrawlConfig()
        assert cfg.products_per_page == 12
        assert cfg.retry_start == 2
        assert cfg.page_range_limit == 0
        assert cfg.zero_result_policy == "error"
        assert cfg.enable_batch_processing is True
        assert (cfg.batch_size, cfg.batch_delay) == (30, 2.0)
        assert cfg.schema_version == CONFIG_SCHEMA_VERSION

    def test_overrides_skip_none(self):
        cfg = CrawlConfig().with_overrides(initial_concurrency=4, output_dir=None)
        assert cfg.initial_concurrency == 4
        assert cfg.output_dir == CrawlConfig().output_dir

    def test_unknown_override(self):
        with pytest.raises(ConfigError, match="bogus"):
            CrawlConfig().with_overrides(bogus=1)

    @pytest.mark.parametrize("overrides", [
        {"initial_concurrency": 0},
        {"page_timeout": 0},
        {"min_request_delay": 2.0, "max_request_delay": 1.0},
        {"retry_start": 1},
        {"retry_start": 4, "retry_max": 2},
        {"page_range_limit": -1},
        {"zero_result_policy": "ignore"},
        {"batch_size": 0},
        {"batch_delay": -1.0},
    ])
    def test_validate_rejects(self, tmp_path, overrides):
        cfg = CrawlConfig(output_dir=str(tmp_path)).with_overrides(**overrides)
        with pytest.raises(ConfigError):
            cfg.validate()

    def test_validate_creates_output_dir(self, tmp_path):
        out = tmp_path / "nested" / "out"
        CrawlConfig(output_dir=str(out)).validate()
        assert out.is_dir()

    def test_retry_rounds_can_be_disabled(self, tmp_path):
        CrawlConfig(output_dir=str(tmp_path), retry_start=2, retry_max=1).validate()


class TestLoaders:
    """Test cases for from_file / from_env and schema migration."""

    def test_schema_one_milliseconds_migrate(self):
        data = migrate_config({"page_timeout_ms": 45000, "min_request_delay_ms": 250, "batch_delay_ms": 2000})
        assert data["page_timeout"] == 45.0
        assert data["min_request_delay"] == 0.25
        assert data["batch_delay"] == 2.0
        assert "page_timeout_ms" not in data
        assert data["schema_version"] == CONFIG_SCHEMA_VERSION

    def test_newer_schema_is_rejected(self):
        with pytest.raises(ConfigError):
            migrate_config({"schema_version": CONFIG_SCHEMA_VERSION + 1})

    def test_from_file_keeps_unknown_keys_as_extra(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "schema_version": 2,
            "products_per_page": 24,
            "zero_result_policy": "allow",
            "dashboard_theme": "dark",
        }))

        cfg = load_config(str(path))

        assert cfg.products_per_page == 24
        assert cfg.zero_result_policy == "allow"
        assert cfg.extra == {"dashboard_theme": "dark"}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MATTER_CRAWLER_PAGE_RANGE_LIMIT", "7")
        monkeypatch.setenv("MATTER_CRAWLER_PAGE_TIMEOUT", "12.5")
        monkeypatch.setenv("MATTER_CRAWLER_AUTO_SAVE", "false")

        cfg = load_config()

        assert cfg.page_range_limit == 7
        assert cfg.page_timeout == 12.5
        assert cfg.auto_save is False
