import argparse
import logging
import sys

import trio

from ._config import ConfigurationError, load_configuration_from_file
from ._proxy import ForwardProxy

logger = logging.getLogger("forwardproxy")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="forwardproxy", description="A whitelisting HTTP forward proxy.")
    parser.add_argument("config", nargs="?", default="config.yaml", help="path to the YAML configuration (default: %(default)s)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        proxy = ForwardProxy(load_configuration_from_file(args.config))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        trio.run(proxy.listen)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt - shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
