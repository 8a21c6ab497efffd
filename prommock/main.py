"""Main entry point for the prom-mock server."""
import argparse
import logging
import sys

from prommock.api import PromMockAPI
from prommock.backend import Backend
from prommock.config import load_config


def setup_logging(log_level: str, log_format: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format == "json":
        fmt = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
    else:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=level,
        format=fmt,
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prom-mock",
        description="prom-mock - Programmable Prometheus API emulator for tests"
    )
    parser.add_argument("--config", "-c", help="Path to configuration YAML file")
    parser.add_argument("--listen", help="Address to listen on (host:port)")
    parser.add_argument("--fixtures", help="Path to fixture YAML file")
    parser.add_argument(
        "--fixed-now",
        dest="fixed_now",
        help="Freeze the clock at this instant (RFC3339 or unix seconds)"
    )
    parser.add_argument("--latency", help="Artificial latency per response, e.g. 100ms or 0.5")
    parser.add_argument(
        "--error-rate",
        dest="error_rate",
        type=float,
        help="Probability (0.0-1.0) of answering 503 instead"
    )
    parser.add_argument("--seed", type=int, help="Seed for error injection")
    parser.add_argument("--log-level", dest="log_level", help="Log level (DEBUG, INFO, ...)")
    return parser


def main(argv=None):
    """Main function."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = load_config(
            args.config,
            listen=args.listen,
            fixtures=args.fixtures,
            fixed_now=args.fixed_now,
            latency=args.latency,
            error_rate=args.error_rate,
            seed=args.seed,
            log_level=args.log_level,
        )
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config.log_level, config.log_format)
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("prom-mock")
    logger.info("=" * 60)
    if args.config:
        logger.info(f"Configuration loaded from: {args.config}")
    logger.info(f"Latency: {config.mock.latency_ms}ms, error rate: {config.mock.error_rate}")
    if config.mock.fixed_now is not None:
        logger.info(f"Clock fixed at: {config.mock.fixed_now}")

    try:
        backend = Backend.from_config(config)
    except Exception as e:
        logger.error(f"Failed to load fixtures: {e}", exc_info=True)
        sys.exit(1)
    logger.info(f"Fixture routes loaded: {len(backend.fixtures)}")

    api = PromMockAPI(backend)
    logger.info(f"Listening on {config.listen}")
    try:
        api.run(host=config.host, port=config.port)
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
