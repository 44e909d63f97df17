import json

import pytest
from click.testing import CliRunner

import bbsync_settings
from bbsync import cli
from bbsync_config import SYNC_ORDER, load_config
from conftest import BASE, rec


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.delenv("BUBBLE_API_BASE", raising=False)
    monkeypatch.delenv("BUBBLE_API_KEY", raising=False)
    monkeypatch.delenv("SYNC_LOG_FILE", raising=False)
    monkeypatch.delenv("BBSYNC_CONFIG", raising=False)
    monkeypatch.setattr(bbsync_settings, "_cache", None)
    return tmp_path


def test_init_db_then_validate_json(env):
    runner = CliRunner()
    assert runner.invoke(cli, ["init-db"]).exit_code == 0

    result = runner.invoke(cli, ["validate", "--json"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["total_errors"] == 0
    assert report["summary"].startswith("Checked 0 records")


def test_file_stats_on_empty_db(env):
    runner = CliRunner()
    runner.invoke(cli, ["init-db"])

    result = runner.invoke(cli, ["file-stats"])

    assert result.exit_code == 0
    assert "Pending external files: 0" in result.output


def test_sync_requires_bubble_credentials(env):
    result = CliRunner().invoke(cli, ["sync"])

    assert result.exit_code == 1
    assert "BUBBLE_API_BASE" in result.output
    assert "BUBBLE_API_KEY" in result.output


def test_progress_for_unknown_session(env):
    runner = CliRunner()
    runner.invoke(cli, ["init-db"])

    result = runner.invoke(cli, ["progress", "nope"])

    assert "No sync session nope" in result.output


def test_default_config_covers_sync_order():
    cfg = load_config()
    assert list(cfg.entities) == SYNC_ORDER
    assert cfg.entities["customers"].conflict_column == "customer_id"
    assert len(cfg.files) == 5


def test_config_file_override(tmp_path):
    path = tmp_path / "bbsync.config.json"
    path.write_text(
        json.dumps({"entities": {"agents": {"type_name": "agent", "table": "agent"}}}),
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert list(cfg.entities) == ["agents"]
    assert cfg.files == {}

    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


@pytest.fixture
def bubble_env(env, monkeypatch, bubble):
    monkeypatch.setenv("BUBBLE_API_BASE", BASE)
    monkeypatch.setenv("BUBBLE_API_KEY", "test-key")
    bubble.add("invoice", rec("i1", **{"Invoice ID": 7}))
    return bubble


def test_sync_ids_from_file(env, bubble_env):
    ids = env / "ids.csv"
    ids.write_text("type,id,modified_date\ninvoice,i1,2025-01-10T00:00:00Z\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["sync-ids", str(ids)])

    assert result.exit_code == 0, result.output
    assert "Parsed 1 ids" in result.output
    assert "invoices: synced 1, skipped 0, failed 0" in result.output
    assert "SUCCESS: Id list sync completed!" in result.output


def test_sync_invoice_reports_up_to_date(env, bubble_env):
    runner = CliRunner()
    first = runner.invoke(cli, ["sync-invoice", "i1"])
    assert "SUCCESS: Invoice i1 synced!" in first.output

    second = runner.invoke(cli, ["sync-invoice", "i1"])
    assert "Invoice i1 is up to date" in second.output

    forced = runner.invoke(cli, ["sync-invoice", "i1", "--force"])
    assert "invoices: synced 1" in forced.output
