"""
MetricStore Server Runner

Usage:
    python -m metricstore --config metricstore.yml
    python -m metricstore --port 9090 --data-dir /var/lib/metricstore
"""

import argparse
import asyncio
import logging
import sys

import uvicorn

from .api import create_api_server
from .config import MetricStoreConfig, Settings, load_config
from .engine import MetricStore
from .errors import MetricStoreError
from .storage import get_default_data_dir

logger = logging.getLogger("MetricStore")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MetricStore: metrics time series engine")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind to")
    parser.add_argument("--port", type=int, default=9090, help="Port to listen on")
    parser.add_argument("--data-dir", help="Directory for flushed chunks (default: in-memory only)")
    parser.add_argument("--persist", action="store_true",
                        help="Flush chunks to METRICSTORE_DATA_DIR or ~/.metricstore/data")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    return parser


def load(args: argparse.Namespace) -> MetricStoreConfig:
    """Environment settings, then the config file, then command line overrides"""
    settings = Settings.from_env()
    if args.config:
        config = load_config(args.config, settings)
    else:
        config = MetricStoreConfig(settings=settings)
    if args.data_dir:
        config.settings.data_dir = args.data_dir
    elif args.persist and not config.settings.data_dir:
        config.settings.data_dir = str(get_default_data_dir())
    return config


async def serve(store: MetricStore, host: str, port: int, log_level: str) -> None:
    api, server_config = create_api_server(store, host=host, port=port)
    server_config["log_level"] = log_level.lower()

    await store.start()
    logger.info(f"Serving on http://{host}:{port} (query: /api/v1/query, push: /metrics/job/...)")
    server = uvicorn.Server(uvicorn.Config(**server_config))
    try:
        await server.serve()
    finally:
        await store.stop()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        store = MetricStore.from_config(load(args))
    except (MetricStoreError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return 2

    try:
        asyncio.run(serve(store, args.host, args.port, args.log_level))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
