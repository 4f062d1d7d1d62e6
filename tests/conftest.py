# Shared pytest fixtures
from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from bulk_import.logging.init import reset_logging
from bulk_import.services.mapping_cache import InMemoryMappingCache
from bulk_import.services.stores import InMemoryProductStore


@pytest.fixture(autouse=True)
def _fresh_logging():
    # ハンドラは setup 時の sys.stdout を掴むため、テスト毎に作り直す
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.setenv("DISABLE_DB_CONNECT", "1")
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """ingest:
  preview_rows: 10
  sample_rows: 5
mapping:
  fuzzy_accept: 70
  low_confidence: 70
execution:
  batch_size: 100
  max_workers: 2
  max_retry_attempts: 3
sessions:
  ttl_seconds: 600
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def products_csv() -> bytes:
    return (
        "product_name,cost,item_code\n"
        "Widget,19.99,SKU001\n"
        "Gadget,5.50,SKU002\n"
        "Doohickey,12,SKU003\n"
    ).encode("utf-8")


@pytest.fixture()
def cache() -> InMemoryMappingCache:
    return InMemoryMappingCache()


@pytest.fixture()
def store() -> InMemoryProductStore:
    return InMemoryProductStore()
