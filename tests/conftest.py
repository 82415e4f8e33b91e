# Shared pytest fixtures
from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from case_importer.logging.init import reset_logging
from case_importer.services.bulk_importer import BulkImporter
from tests.fakes import FakeAudit, FakeCaseStore, FakeDirectory, FakeJobStore, FakeNotifier, FakeQuota

TENANT = "firm-1"
INITIATOR = "user-admin"


@pytest.fixture(autouse=True)
def _clean_logging():
    # CLI tests install the stdout handler (propagate=False); undo it so caplog keeps working
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(tmp_path: Path, monkeypatch) -> Path:
    (tmp_path / "config").mkdir()
    (tmp_path / "logs").mkdir()
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture()
def sample_config_yaml() -> str:
    return """database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
scheduler:
  max_workers: 2
estimate:
  seconds_per_row: 0.5
template:
  default_locale: es
importer:
  audit_enabled: true
  allowed_roles: [admin, lawyer]
logs_directory: ./logs
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def fixed_clock():
    return lambda: datetime(2025, 3, 10, 9, 30, tzinfo=UTC)


@pytest.fixture()
def quota() -> FakeQuota:
    return FakeQuota(tenant_id=TENANT)


@pytest.fixture()
def directory() -> FakeDirectory:
    d = FakeDirectory()
    d.add_client(TENANT, "ana@example.com")
    return d


@pytest.fixture()
def case_store() -> FakeCaseStore:
    return FakeCaseStore()


@pytest.fixture()
def audit() -> FakeAudit:
    return FakeAudit()


@pytest.fixture()
def job_store() -> FakeJobStore:
    return FakeJobStore()


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def importer(case_store, directory, quota, audit, fixed_clock) -> BulkImporter:
    return BulkImporter(
        cases=case_store,
        resolver=directory,
        clients=directory,
        quota=quota,
        audit=audit,
        clock=fixed_clock,
    )
