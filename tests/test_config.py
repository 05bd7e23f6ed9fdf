import textwrap

import pytest

from build_agent_exporter.config import AppConfig, ServerSettings, load_config
from build_agent_exporter.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for var in ("TFSEX_MAIN_ACCESSTOKEN", "TFSEX_EXPORTER__PORT", "TFSEX_IGNORE_HOSTED_POOLS"):
        monkeypatch.delenv(var, raising=False)


def _write(tmp_path, body: str):
    path = tmp_path / "config.toml"
    path.write_text(textwrap.dedent(body))
    return path


def test_defaults_fill_in_missing_sections(tmp_path):
    path = _write(
        tmp_path,
        """
        [servers.main]
        address = "https://tfs.example.com"
        access_token = "from-file"
        """,
    )

    config = load_config(path)

    assert config.exporter.port == 8080
    assert config.exporter.endpoint == "/metrics"
    assert config.ignore_hosted_pools is True
    assert config.max_concurrent_pools is None
    assert config.retry_max_elapsed_seconds == 30
    assert config.servers["main"].completed_request_count == 0


def test_endpoint_gets_leading_slash(tmp_path):
    path = _write(
        tmp_path,
        """
        [exporter]
        port = 9100
        endpoint = "stats"

        [servers.main]
        address = "https://tfs.example.com"
        access_token = "t"
        """,
    )

    config = load_config(path)

    assert config.exporter.endpoint == "/stats"
    assert config.exporter.port == 9100


def test_access_token_env_overrides_file(tmp_path, monkeypatch):
    monkeypatch.setenv("TFSEX_MAIN_ACCESSTOKEN", "from-env")
    path = _write(
        tmp_path,
        """
        [servers.main]
        address = "https://tfs.example.com"
        access_token = "from-file"
        """,
    )

    assert load_config(path).servers["main"].access_token == "from-env"


def test_environment_wins_over_file(tmp_path, monkeypatch):
    monkeypatch.setenv("TFSEX_EXPORTER__PORT", "9200")
    monkeypatch.setenv("TFSEX_IGNORE_HOSTED_POOLS", "false")
    path = _write(
        tmp_path,
        """
        ignore_hosted_pools = true

        [exporter]
        port = 9100
        endpoint = "/metrics"

        [servers.main]
        address = "https://tfs.example.com"
        access_token = "t"
        """,
    )

    config = load_config(path)

    assert config.exporter.port == 9200
    assert config.exporter.endpoint == "/metrics"
    assert config.ignore_hosted_pools is False


def test_every_problem_is_reported(tmp_path):
    path = _write(
        tmp_path,
        """
        [servers.main]
        address = "https://tfs.example.com"

        [servers.other]
        address = "https://other.example.com"
        access_token = "t"
        use_proxy = true
        """,
    )

    with pytest.raises(ConfigError) as excinfo:
        load_config(path)

    message = str(excinfo.value)
    assert "servers.main: AccessToken not found" in message
    assert "servers.other: use_proxy is true" in message


def test_no_servers_is_an_error(tmp_path):
    with pytest.raises(ConfigError, match="No servers configured"):
        load_config(_write(tmp_path, "log_level = 'DEBUG'\n"))


def test_missing_or_broken_file(tmp_path):
    with pytest.raises(ConfigError, match="Failed to decode"):
        load_config(tmp_path / "missing.toml")
    with pytest.raises(ConfigError, match="Failed to decode"):
        load_config(_write(tmp_path, "servers = [\n"))


def test_unknown_log_level_is_a_config_error(tmp_path):
    path = _write(
        tmp_path,
        """
        log_level = "verbose"

        [servers.main]
        address = "https://tfs.example.com"
        access_token = "t"
        """,
    )

    with pytest.raises(ConfigError, match="log_level must be one of"):
        load_config(path)


def test_log_level_is_normalised(tmp_path):
    path = _write(
        tmp_path,
        """
        log_level = "debug"

        [servers.main]
        address = "https://tfs.example.com"
        access_token = "t"
        """,
    )

    assert load_config(path).log_level == "DEBUG"


def test_access_token_env_keeps_rest_of_server_entry(monkeypatch):
    monkeypatch.setenv("TFSEX_MAIN_ACCESSTOKEN", "from-env")

    config = AppConfig(
        servers={"main": ServerSettings(address="https://tfs.example.com", completed_request_count=5)}
    )

    server = config.servers["main"]
    assert server.access_token == "from-env"
    assert server.address == "https://tfs.example.com"
    assert server.completed_request_count == 5
