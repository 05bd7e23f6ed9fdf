import argparse
import logging

from dotenv import load_dotenv

from .config import load_config
from .errors import ConfigError
from .server import build_registry, serve

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("build_agent_exporter")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="build-agent-exporter",
        description="Expose Azure DevOps / TFS build agent pool metrics for Prometheus.",
    )
    parser.add_argument("-c", "--config", default="config.toml", help="Path to config file")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"{e}", extra={"path": args.config})
        return 1

    logging.getLogger().setLevel(config.log_level.upper())

    registry = build_registry(config)
    try:
        serve(registry, config.exporter)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except OSError as e:
        logger.error(f"Error starting exporter: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
