# config/logging_config.py

import logging
from pathlib import Path

from config.settings import Settings


def setup_logging(config: Settings) -> logging.Logger:
    """Configure root logging once and return the service logger."""
    log_dir = Path(config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / "generation.log", encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    return logging.getLogger("imagegen_queue")
