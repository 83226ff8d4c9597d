"""Run the opsflow HTTP runtime under uvicorn."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from opsflow.api import create_fastapi_app
from opsflow.logging_config import get_logger, setup_logging


def main():
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")

    setup_logging()
    logger = get_logger("opsflow.main")

    host = os.getenv("API_HOST", "localhost")
    port = int(os.getenv("API_PORT", "8000"))
    logger.info("Serving opsflow on %s:%s", host, port)

    # uvicorn keeps our root handlers instead of installing its own
    uvicorn.run(
        create_fastapi_app(),
        host=host,
        port=port,
        log_config=None,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
