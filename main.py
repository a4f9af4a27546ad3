"""Entry point for the OTLP log forwarder."""

import logging
import os
import signal
import sys
import threading

from log_forwarder.agent import LogForwardingAgent
from log_forwarder.config import (
    DEFAULT_CONFIG_PATH,
    build_cli_parser,
    load_config,
    load_yaml_config,
    prompt_for_config,
    validate_config,
)
from log_forwarder.errors import ConfigError
from log_forwarder.service import write_systemd_unit


def main(argv=None) -> int:
    args = build_cli_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger(__name__)

    if args.install_service:
        write_systemd_unit(config_path=args.config)
        return 0

    config_path = args.config or DEFAULT_CONFIG_PATH
    try:
        if not os.path.exists(config_path) and args.log_files is None and sys.stdin.isatty():
            yaml_data = prompt_for_config(config_path)
        else:
            yaml_data = load_yaml_config(config_path)
        config = load_config(args, yaml_data)
        validate_config(config)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    shutdown_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("Monitoring log files: %s", ", ".join(config.log_files))
    agent = LogForwardingAgent(config)
    agent.run(shutdown_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
