"""Prometheus exporter for Azure DevOps / TFS build agent pools."""

from .client import AzureDevOpsClient, RetryPolicy, SourceClient
from .collector import BuildAgentCollector, LabelledCollector, build_families
from .config import AppConfig, load_config
from .errors import ConfigError, ExporterError, SourceError
from .pipeline import FailureIndicator, Pipeline, PublishGate

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "AzureDevOpsClient",
    "BuildAgentCollector",
    "ConfigError",
    "ExporterError",
    "FailureIndicator",
    "LabelledCollector",
    "Pipeline",
    "PublishGate",
    "RetryPolicy",
    "SourceClient",
    "SourceError",
    "build_families",
    "load_config",
]
