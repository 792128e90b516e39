import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config


def test_detect_project_root_is_backend_parent(tmp_path):
    backend_dir = tmp_path / "project" / "backend"
    backend_dir.mkdir(parents=True, exist_ok=True)

    assert config._detect_project_root(backend_dir.resolve()) == (tmp_path / "project").resolve()


def test_relative_sqlite_path_resolves_under_project_root(tmp_path, monkeypatch):
    project_root = tmp_path / "project"
    project_root.mkdir()
    monkeypatch.setattr(config, "_PROJECT_ROOT", project_root.resolve())

    normalized = config.Settings._normalize_database_url("sqlite+aiosqlite:///./data/indexer.db")
    expected_path = (project_root / "data" / "indexer.db").resolve()

    assert normalized == f"sqlite+aiosqlite:///{expected_path}"
    assert expected_path.parent.is_dir()


def test_absolute_and_memory_urls_are_kept(tmp_path):
    absolute = (tmp_path / "abs.db").resolve()

    assert config.Settings._normalize_database_url(f"sqlite+aiosqlite:///{absolute}") == f"sqlite+aiosqlite:///{absolute}"
    assert config.Settings._normalize_database_url("sqlite+aiosqlite:///:memory:") == "sqlite+aiosqlite:///:memory:"
    assert (
        config.Settings._normalize_database_url("'postgresql+asyncpg://u:p@db/indexer'")
        == "postgresql+asyncpg://u:p@db/indexer"
    )


def test_blank_secrets_are_unset():
    settings = config.Settings(CRON_SECRET="   ", SYNC_PASSWORD="", SWAP_FEED_API_KEY=" key ")

    assert settings.CRON_SECRET is None
    assert settings.SYNC_PASSWORD is None
    assert settings.SWAP_FEED_API_KEY == "key"


def test_url_fields_are_trimmed():
    settings = config.Settings(SWAP_FEED_URL=' "https://feed.test/v1/" ')

    assert settings.SWAP_FEED_URL == "https://feed.test/v1"


def test_negative_phase_weight_rejected():
    with pytest.raises(ValidationError):
        config.Settings(SYNC_DISCOVERY_WEIGHT=-1)


def test_usd_precision_has_a_floor():
    with pytest.raises(ValidationError):
        config.Settings(USD_DECIMAL_PLACES=4)


def test_pool_and_page_sizes_are_at_least_one():
    settings = config.Settings(SYNC_MAX_PARALLEL_TOKENS=0, SWAP_FEED_PAGE_SIZE=-5)

    assert settings.SYNC_MAX_PARALLEL_TOKENS == 1
    assert settings.SWAP_FEED_PAGE_SIZE == 1
