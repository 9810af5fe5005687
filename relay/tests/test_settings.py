import pytest

from relay.settings import (
    CONFIG_PATH,
    DEFAULT_CLEANUP_DELAY_MS,
    DEFAULT_COMPLETION_DELAY_MS,
    load_config,
    load_settings,
    parse_origins,
)

ENV_VARS = [
    "SOGNI_ENV", "SOGNI_APP_ID", "SOGNI_USERNAME", "SOGNI_PASSWORD", "CLIENT_ORIGIN", "PORT",
    "RELAY_COMPLETION_DELAY_MS", "RELAY_CLEANUP_DELAY_MS", "RELAY_KEEPALIVE_S", "RELAY_SUBSCRIBER_QUEUE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_packaged_config_defaults():
    settings = load_settings(CONFIG_PATH)
    assert settings.completion_delay_ms == DEFAULT_COMPLETION_DELAY_MS == 2000
    assert settings.cleanup_delay_ms == DEFAULT_CLEANUP_DELAY_MS == 600000
    assert settings.completion_delay_s == 2.0
    assert settings.cleanup_delay_s == 600.0
    assert settings.provider_env == "production"
    assert settings.testnet is False
    assert settings.has_credentials is False
    assert settings.render.number_of_images == 16
    assert settings.allowed_origins == ["http://localhost:5173"]


def test_missing_file_uses_defaults(tmp_path):
    missing = tmp_path / "nope.yaml"
    assert load_config(missing) == {}
    settings = load_settings(missing)
    assert settings.port == 3001
    assert settings.completion_delay_ms == 2000
    assert settings.app_id.startswith("render-relay-")


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "relay.yaml"
    path.write_text(
        "provider:\n  env: production\n  app_id: from-file\n"
        "relay:\n  completion_delay_ms: 500\n"
    )
    monkeypatch.setenv("SOGNI_ENV", "staging")
    monkeypatch.setenv("SOGNI_USERNAME", "artist")
    monkeypatch.setenv("SOGNI_PASSWORD", "secret")
    monkeypatch.setenv("RELAY_CLEANUP_DELAY_MS", "1000")
    monkeypatch.setenv("CLIENT_ORIGIN", "https://a.example, https://b.example")
    monkeypatch.setenv("PORT", "4000")

    settings = load_settings(path)

    assert settings.provider_env == "staging"
    assert settings.endpoints["socket"] == "wss://socket-staging.sogni.ai"
    assert settings.testnet is True
    assert settings.app_id == "from-file"
    assert settings.has_credentials is True
    assert settings.completion_delay_ms == 500
    assert settings.cleanup_delay_ms == 1000
    assert settings.allowed_origins == ["https://a.example", "https://b.example"]
    assert settings.port == 4000


def test_bad_numeric_env_raises(tmp_path, monkeypatch):
    monkeypatch.setenv("RELAY_COMPLETION_DELAY_MS", "soon")
    with pytest.raises(ValueError, match="RELAY_COMPLETION_DELAY_MS"):
        load_settings(tmp_path / "missing.yaml")


def test_unknown_render_option_raises(tmp_path):
    path = tmp_path / "relay.yaml"
    path.write_text("render:\n  colour: blue\n")
    with pytest.raises(ValueError, match="colour"):
        load_settings(path)


def test_non_mapping_config_raises(tmp_path):
    path = tmp_path / "relay.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_unknown_env_falls_back_to_production_endpoints(tmp_path, monkeypatch):
    monkeypatch.setenv("SOGNI_ENV", "moon")
    settings = load_settings(tmp_path / "missing.yaml")
    assert settings.endpoints["api"] == "https://api.sogni.ai"


@pytest.mark.parametrize("raw,expected", [
    ("", []),
    ("http://a", ["http://a"]),
    (" http://a , ,http://b ", ["http://a", "http://b"]),
])
def test_parse_origins(raw, expected):
    assert parse_origins(raw) == expected
