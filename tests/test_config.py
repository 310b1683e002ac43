from studio_api.config import OperatorConfig


def test_missing_file_uses_defaults(tmp_path):
    config = OperatorConfig(str(tmp_path / "absent.yaml"))
    assert config.get("server.port") == 8008
    assert config.get("video.engine_timeout_sec") == 15
    assert config.get("pipeline.batch_size") == 3
    assert config.get("nope.missing", "fallback") == "fallback"


def test_yaml_is_layered_over_defaults(tmp_path):
    path = tmp_path / "studio.yaml"
    path.write_text("server:\n  port: 9000\npipeline:\n  batch_size: 5\n", encoding="utf-8")
    config = OperatorConfig(str(path))
    assert config.get("server.port") == 9000
    assert config.get("server.host") == "127.0.0.1"
    assert config.get("pipeline.batch_size") == 5
    assert config.get("pipeline.ready_threshold") == 80


def test_invalid_yaml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "studio.yaml"
    path.write_text("server: [unclosed\n", encoding="utf-8")
    assert OperatorConfig(str(path)).get("server.port") == 8008


def test_reload_picks_up_changes(tmp_path):
    path = tmp_path / "studio.yaml"
    path.write_text("cache:\n  ttl_seconds: 10\n", encoding="utf-8")
    config = OperatorConfig(str(path))
    path.write_text("cache:\n  ttl_seconds: 60\n", encoding="utf-8")
    config.reload()
    assert config.get("cache.ttl_seconds") == 60


def test_secrets_come_from_named_env_vars(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    config = OperatorConfig(str(tmp_path / "absent.yaml"))
    assert config.get_secret("generation.api_key_env") == "sk-test"
    assert config.get_secret("generation.unknown_env") == ""


def test_sanitized_config_hides_default_token(tmp_path):
    config = OperatorConfig(str(tmp_path / "absent.yaml"))
    sanitized = config.get_sanitized_config()
    assert sanitized["security"]["default_token"] == "[REDACTED]"
    assert config.get("security.default_token") == "default-admin-token-change-me"


def test_music_and_cache_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("MUSIC_API_URL", "http://music.test")
    config = OperatorConfig(str(tmp_path / "absent.yaml"))
    assert config.get("music.default_style") == "Urban/Hip-Hop"
    assert config.get_secret("music.api_url_env") == "http://music.test"
    assert config.get("cache.max_entries") == 1024
