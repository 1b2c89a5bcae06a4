import logging
import os

LOG_DIR = "./log"
LOG_FILE = f"{LOG_DIR}/voicebatch.log"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

def check_folder_exist():
    if not os.path.exists(LOG_DIR):
        os.mkdir(LOG_DIR)

def configure_logging(level: int = logging.INFO):
    """Console plus file logging for the engine's modules."""
    check_folder_exist()
    logger = logging.getLogger("voicebatch")
    if logger.handlers:
        return logger
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in (logging.StreamHandler(), logging.FileHandler(LOG_FILE, encoding="utf-8")):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger
