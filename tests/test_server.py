from wsgiref.util import setup_testing_defaults

from prometheus_client.parser import text_string_to_metric_families

from build_agent_exporter.__main__ import main
from build_agent_exporter.config import AppConfig, ServerSettings
from build_agent_exporter.server import build_registry, make_app


def _call(app, path):
    environ = {"PATH_INFO": path}
    setup_testing_defaults(environ)
    captured = {}

    def start_response(status, headers):
        captured["status"] = status

    body = b"".join(app(environ, start_response))
    return captured["status"], body


def _config(*names: str) -> AppConfig:
    return AppConfig(
        servers={name: ServerSettings(address="https://tfs.example.com", access_token="t") for name in names},
    )


def test_registry_labels_each_server(two_pool_source):
    registry = build_registry(_config("main"), {"main": lambda: two_pool_source})

    assert registry.get_sample_value("pool_total_jobs", {"pool": "A", "name": "main"}) == 2


def test_app_serves_metrics_on_configured_endpoint_only(two_pool_source):
    registry = build_registry(_config("main"), {"main": lambda: two_pool_source})
    app = make_app(registry, "/stats")

    status, body = _call(app, "/stats")
    assert status.startswith("200")
    samples = {
        (s.name, tuple(sorted(s.labels.items()))): s.value
        for family in text_string_to_metric_families(body.decode("utf-8"))
        for s in family.samples
    }
    key = (
        "build_agents_total",
        (("enabled", "true"), ("name", "main"), ("pool", "A"), ("status", "online")),
    )
    assert samples[key] == 2

    status, _ = _call(app, "/metrics")
    assert status.startswith("404")


def test_main_exits_non_zero_on_bad_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert main(["--config", str(tmp_path / "missing.toml")]) == 1
