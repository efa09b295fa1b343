"""Unit tests for server settings loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from server.settings import CONFIG_PATH, ServerConfig, find_config_path, load_config


def test_bundled_config_loads():
    config = load_config(CONFIG_PATH, environ={})
    assert config.backend_url == "http://127.0.0.1:7860"
    assert config.ws_port == 8080
    assert config.files_port == 8081
    assert config.tick_interval_s == 1.0
    assert config.eviction_delay_s == 300


def test_env_overrides(tmp_path):
    path = tmp_path / "server.yaml"
    path.write_text("backend_url: http://yaml:7860\nws_port: 9000\n")

    config = load_config(
        path,
        environ={"AUTO1111_API_URL": "http://env:7860", "PORT": "9999", "DATA_DIR": str(tmp_path / "data")},
    )

    assert config.backend_url == "http://env:7860"
    assert config.ws_port == 9999
    assert config.output_dir == tmp_path / "data" / "output"


def test_env_var_selects_config_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("server_id: custom\n")
    monkeypatch.setenv("GENQUEUE_CONFIG", str(path))

    assert find_config_path() == path
    assert load_config(environ={}).server_id == "custom"


def test_missing_default_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("GENQUEUE_CONFIG", str(tmp_path / "absent.yaml"))
    config = load_config(environ={})
    assert config == ServerConfig()
    assert config.data_dir == Path("data")


def test_non_mapping_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="mapping"):
        load_config(path, environ={})


def test_invalid_port_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("ws_port: 70000\n")
    with pytest.raises(ValidationError):
        load_config(path, environ={})
