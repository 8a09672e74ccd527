import json

from mac_tuneup.config import Settings, config_path, init_config, load_settings


def test_defaults_without_file_or_environment(tmp_path):
    settings = load_settings(tmp_path / "config.json", environ={})
    assert settings == Settings()
    assert settings.mail_downloads_min_bytes == 5120 * 1024


def test_file_then_environment_precedence(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"log_age_days": 14, "mail_age_days": 60}))
    settings = load_settings(path, environ={"MAC_TUNEUP_MAIL_AGE_DAYS": "90"})
    assert settings.log_age_days == 14
    assert settings.mail_age_days == 90


def test_invalid_values_are_ignored(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"log_age_days": 0, "probe_timeout": True, "colour": "blue"}))
    settings = load_settings(path, environ={"MAC_TUNEUP_MAIL_DOWNLOADS_MIN_KB": "lots"})
    assert settings == Settings()


def test_unreadable_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_settings(path, environ={}) == Settings()


def test_init_writes_loadable_defaults(tmp_path):
    path = init_config(tmp_path / "nested" / "config.json")
    assert json.loads(path.read_text())["mail_downloads_min_kb"] == 5120
    assert load_settings(path, environ={}) == Settings()


def test_config_path_honours_xdg(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert config_path() == tmp_path / "mac-tuneup" / "config.json"
