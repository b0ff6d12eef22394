"""Uvicorn runner."""

import copy

import uvicorn
from uvicorn.config import LOGGING_CONFIG

from labseq.app import App
from labseq.config import Config
from labseq.web.server import create_fastapi_app


def run_server(app: App, config: Config) -> None:
    """Serve the API with labseq log formats."""
    log_config = copy.deepcopy(LOGGING_CONFIG)
    log_config["formatters"]["default"]["fmt"] = "%(asctime)s %(levelname)s labseq %(message)s"
    log_config["formatters"]["access"]["fmt"] = '%(asctime)s %(client_addr)s "%(request_line)s" %(status_code)s'

    uvicorn.run(
        create_fastapi_app(app, config),
        host=config.host,
        port=config.port,
        log_config=log_config,
        log_level="debug" if config.debug else "info",
        access_log=True,
    )
