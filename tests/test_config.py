from __future__ import annotations

from sqlalchemy import inspect, text

from formpilot import config
from formpilot.db.database import Database, database_from_settings


def test_settings_from_dict_fills_defaults():
    settings = config.settings_from_dict({"fill": {"max_llm_calls": 4}, "worker": {"max_screens": 3}})
    assert settings.fill.max_llm_calls == 4
    assert settings.fill.max_scroll_rounds == 10
    assert settings.worker.max_screens == 3
    assert settings.queue.heartbeat_interval_seconds == 30.0


def test_unknown_keys_are_ignored(capsys):
    settings = config.settings_from_dict({"queue": {"poll_interval_seconds": 1, "bogus": True}, "llm": "oops"})
    assert settings.queue.poll_interval_seconds == 1
    assert settings.llm.model == "gpt-4o-mini"
    assert "bogus" in capsys.readouterr().out


def test_database_url_env_override(monkeypatch):
    monkeypatch.setenv("FORMPILOT_DATABASE_URL", "postgresql+psycopg://u:p@db/formpilot")
    settings = config.settings_from_dict({"database_url": "sqlite:///x.db"})
    assert settings.database_url == "postgresql+psycopg://u:p@db/formpilot"

    monkeypatch.delenv("FORMPILOT_DATABASE_URL")
    assert config.settings_from_dict({"database_url": "sqlite:///x.db"}).database_url == "sqlite:///x.db"


def test_model_chain_deduplicates():
    llm = config.LLMSettings(model="m1", fallback_models=["m2", "m1", "", "m2", "m3"])
    assert llm.model_chain() == ["m1", "m2", "m3"]
    assert config.LLMSettings(model="", fallback_models=["m2"]).model_chain() == ["m2"]


def test_load_settings_from_env_path_and_cache(monkeypatch, tmp_path):
    path = tmp_path / "engine.yaml"
    path.write_text("worker:\n  worker_id: box-1\nfill:\n  max_llm_calls: 2\n", encoding="utf-8")
    monkeypatch.setenv("FORMPILOT_CONFIG", str(path))
    monkeypatch.delenv("FORMPILOT_DATABASE_URL", raising=False)
    monkeypatch.setattr(config, "_settings_cache", None)

    first = config.load_settings()
    assert first.worker.worker_id == "box-1"
    assert first.fill.max_llm_calls == 2

    path.write_text("worker:\n  worker_id: box-2\n", encoding="utf-8")
    assert config.load_settings() is first
    assert config.load_settings(force_reload=True).worker.worker_id == "box-2"


def test_load_settings_missing_or_broken_file_uses_defaults(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "_settings_cache", None)
    monkeypatch.setenv("FORMPILOT_CONFIG", str(tmp_path / "absent.yaml"))
    assert config.load_settings(force_reload=True).fill.max_llm_calls == 20

    broken = tmp_path / "broken.yaml"
    broken.write_text("fill: [unclosed\n", encoding="utf-8")
    monkeypatch.setenv("FORMPILOT_CONFIG", str(broken))
    assert config.load_settings(force_reload=True).fill.max_llm_calls == 20


def test_bundled_config_matches_defaults(monkeypatch):
    monkeypatch.delenv("FORMPILOT_CONFIG", raising=False)
    monkeypatch.setattr(config, "_settings_cache", None)
    settings = config.load_settings(force_reload=True)
    assert settings.llm.model_chain() == ["gpt-4o-mini", "gpt-4o"]
    assert settings.worker.stall_timeout_seconds == 300


def test_database_from_settings(tmp_path):
    settings = config.Settings(database_url=f"sqlite:///{tmp_path / 'a.db'}")
    db = database_from_settings(settings)
    assert db.is_sqlite
    db.dispose()


def test_create_all_patches_old_jobs_table(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'old.db'}")
    with db.engine.begin() as conn:
        conn.execute(text("CREATE TABLE jobs (id INTEGER PRIMARY KEY, target_url VARCHAR(2048))"))

    db.create_all()

    columns = {c["name"] for c in inspect(db.engine).get_columns("jobs")}
    assert {"scheduled_at", "tags", "result_summary"} <= columns
    assert "job_logs" in inspect(db.engine).get_table_names()
    db.dispose()
