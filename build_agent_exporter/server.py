import logging
from wsgiref.simple_server import WSGIRequestHandler, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

from .client import AzureDevOpsClient, RetryPolicy
from .collector import BuildAgentCollector, LabelledCollector, SourceFactory
from .config import AppConfig, ExporterSettings, ServerSettings

logger = logging.getLogger(__name__)


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug(format % args)


def _source_factory(name: str, server: ServerSettings, config: AppConfig) -> SourceFactory:
    retry_policy = RetryPolicy(max_elapsed_seconds=config.retry_max_elapsed_seconds)
    proxy_url = config.proxy.url or None

    def factory() -> AzureDevOpsClient:
        return AzureDevOpsClient.from_settings(
            name, server, proxy_url=proxy_url, retry_policy=retry_policy
        )

    return factory


def build_registry(
    config: AppConfig, source_factories: dict[str, SourceFactory] | None = None
) -> CollectorRegistry:
    """One labelled collector per configured server, all in a fresh registry."""
    registry = CollectorRegistry()
    for name, server in config.servers.items():
        factory = (source_factories or {}).get(name) or _source_factory(name, server, config)
        collector = BuildAgentCollector(
            name,
            factory,
            ignore_hosted_pools=config.ignore_hosted_pools,
            max_concurrent_pools=config.max_concurrent_pools,
            cycle_timeout=config.cycle_timeout_seconds,
        )
        registry.register(LabelledCollector(collector, {"name": name}))
        if server.use_proxy:
            logger.info(f"Proxy will be used for {name}", extra={"server_name": name})
        logger.info(
            f"Metrics collector created for {name} ({server.address})",
            extra={"server_name": name, "server_address": server.address},
        )
    return registry


def make_app(registry: CollectorRegistry, endpoint: str = "/metrics"):
    """WSGI app serving `registry` on `endpoint` and 404 everywhere else."""
    metrics_app = make_wsgi_app(registry)

    def app(environ, start_response):
        if environ.get("PATH_INFO", "/") != endpoint:
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"Not Found\n"]
        return metrics_app(environ, start_response)

    return app


def serve(registry: CollectorRegistry, exporter: ExporterSettings, addr: str = "0.0.0.0") -> None:
    httpd = make_server(
        addr,
        exporter.port,
        make_app(registry, exporter.endpoint),
        server_class=ThreadingWSGIServer,
        handler_class=_QuietHandler,
    )
    logger.info(f"Serving metrics at {exporter.endpoint} on port: {exporter.port}")
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
