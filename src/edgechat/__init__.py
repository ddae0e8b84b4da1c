# edgechat package init
import logging
import os

__version__ = "0.1.0"


def _configure_logging() -> None:
    level_name = (os.getenv("EDGECHAT_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("edgechat")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[EDGECHAT][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    engine_level_name = (os.getenv("EDGECHAT_ENGINE_LOG_LEVEL") or level_name).upper()
    engine_level = getattr(logging, engine_level_name, level)
    logging.getLogger("edgechat.engine").setLevel(engine_level)


_configure_logging()
