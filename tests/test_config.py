import pytest

from config import DEFAULT_PORT, ServerConfig, parse_args
from errors import ConfigurationError


def test_defaults_when_env_empty():
    config = ServerConfig.from_env(environ={}, argv=[])
    assert config.port == DEFAULT_PORT == 8000
    assert config.host == "0.0.0.0"
    assert config.app_spec == "app->app"
    assert config.verbose is False


def test_empty_port_falls_back_to_default():
    config = ServerConfig.from_env(environ={"PORT": ""}, argv=[])
    assert config.port == 8000


def test_port_from_env():
    config = ServerConfig.from_env(environ={"PORT": "9123", "HOST": "127.0.0.1"}, argv=[])
    assert config.port == 9123
    assert config.host == "127.0.0.1"


def test_cli_overrides_env():
    config = ServerConfig.from_env(
        environ={"PORT": "9123"},
        argv=["--port:7000", "--lode:app->create_app", "--verbose:1", "--max-threads:4"],
    )
    assert config.port == 7000
    assert config.app_spec == "app->create_app"
    assert config.verbose is True
    assert config.max_threads == 4
    assert config.initial_threads == 4


@pytest.mark.parametrize("port", ["abc", "-1", "70000"])
def test_invalid_port(port):
    with pytest.raises(ConfigurationError):
        ServerConfig.from_env(environ={"PORT": port}, argv=[])


def test_parse_args_splits_on_first_colon():
    assert parse_args(["--host:::1"]) == {"--host": "::1"}


@pytest.mark.parametrize("argv", [["--port"], ["--bogus:1"]])
def test_parse_args_rejects(argv):
    with pytest.raises(ConfigurationError):
        parse_args(argv)
