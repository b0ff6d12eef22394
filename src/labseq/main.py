"""Console entry point: `labseq` starts the API server."""

import structlog

from labseq.app import App
from labseq.config import Config
from labseq.logging import setup_logging
from labseq.web.runner import run_server


def main() -> None:
    config = Config()
    setup_logging(config.debug, timezone=config.timezone or "local", default_mode=config.default_mode)
    structlog.get_logger(__name__).info("labseq_starting", host=config.host, port=config.port)
    run_server(App(config), config)


if __name__ == "__main__":
    main()
