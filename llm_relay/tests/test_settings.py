from llm_relay.config.settings import Settings


def test_blank_api_key_is_unset(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    cfg = Settings(openai_api_key="   ", kimi_api_key=" k ")
    assert cfg.openai_api_key is None
    assert cfg.kimi_api_key == "k"


def test_yaml_config_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "relay.yaml"
    path.write_text("default_vendor: anthropic\nretry_max_attempts: 5\nstream_idle_timeout: 30\n", encoding="utf-8")
    monkeypatch.setenv("LLM_RELAY_CONFIG_FILE", str(path))
    monkeypatch.delenv("DEFAULT_VENDOR", raising=False)
    cfg = Settings()
    assert cfg.default_vendor == "anthropic"
    assert cfg.retry_max_attempts == 5
    assert cfg.stream_idle_timeout == 30.0


def test_env_overrides_yaml(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text("default_vendor: anthropic\n", encoding="utf-8")
    monkeypatch.delenv("LLM_RELAY_CONFIG_FILE", raising=False)
    monkeypatch.setenv("DEFAULT_VENDOR", "ollama")
    assert Settings().default_vendor == "ollama"
