import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config


def test_relative_sqlite_path_resolves_against_project_root(tmp_path, monkeypatch):
    project_root = tmp_path / "project"
    project_root.mkdir()
    monkeypatch.setattr(config, "_PROJECT_ROOT", project_root.resolve())

    normalized = config.Settings._normalize_database_url("sqlite+aiosqlite:///./data/copytrade.db")

    expected = (project_root / "data" / "copytrade.db").resolve()
    assert normalized == f"sqlite+aiosqlite:///{expected}"
    assert expected.parent.is_dir()


def test_memory_and_foreign_database_urls_pass_through():
    assert config.Settings._normalize_database_url("sqlite+aiosqlite:///:memory:") == "sqlite+aiosqlite:///:memory:"
    assert config.Settings._normalize_database_url(" 'postgresql+asyncpg://db/app' ") == "postgresql+asyncpg://db/app"


def test_rpc_endpoints_are_deduplicated_primary_first():
    settings = config.Settings(
        SOLANA_RPC_URL="https://rpc.one/",
        SOLANA_RPC_FALLBACK_URLS=["https://rpc.two", "https://rpc.one", ""],
        RPC_POOL_SIZE=0,
    )

    assert settings.rpc_endpoints == ["https://rpc.one", "https://rpc.two"]
    assert settings.rpc_pool_size == 3


def test_url_fields_are_trimmed():
    settings = config.Settings(JUPITER_API_URL=' "https://quote.test/swap/v1/" ')

    assert settings.JUPITER_API_URL == "https://quote.test/swap/v1"


def test_unknown_priority_level_is_rejected():
    with pytest.raises(ValueError):
        config.Settings(RAYDIUM_PRIORITY_LEVEL="ultra")
