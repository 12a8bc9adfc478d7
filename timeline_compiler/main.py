import logging
import os
from pathlib import Path

from dotenv import load_dotenv

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from timeline_compiler.config import ServiceConfig
from timeline_compiler.handlers.compile_handler import router as compile_router
from timeline_compiler.operators.transcode_operator import TranscodeService

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    logger_level = (level_name or LOG_LEVEL).upper()
    logger_level_value = getattr(logging, logger_level, logging.INFO)

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(logger_level_value)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    target_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_file_path.resolve())
        for handler in target_logger.handlers
    ):
        target_logger.addHandler(file_handler)
    target_logger.setLevel(logger_level_value)


COMPILE_SERVICE_LOG_FILE = os.getenv("COMPILE_SERVICE_LOG_FILE", "").strip()
if COMPILE_SERVICE_LOG_FILE:
    _attach_file_handler("timeline_compiler", Path(COMPILE_SERVICE_LOG_FILE))


def create_app(
    config: ServiceConfig | None = None,
    service: TranscodeService | None = None,
) -> FastAPI:
    config = config or ServiceConfig.from_env()
    app = FastAPI(title="Timeline Compile Service")
    app.state.config = config
    app.state.transcode_service = service or TranscodeService(config)

    app.include_router(compile_router)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )
    return app


app = create_app()


def main() -> None:
    config: ServiceConfig = app.state.config
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
