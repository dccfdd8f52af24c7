# storesync/utils/logger.py
import logging
import os

LEVELS = {"ERROR": logging.ERROR, "WARN": logging.WARNING, "INFO": logging.INFO, "DEBUG": logging.DEBUG, "NONE": 100}

logger = logging.getLogger("storesync")
logger.setLevel(LEVELS.get(os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))

def debug(msg): logger.debug(msg)
def info(msg):  logger.info(msg)
def warn(msg):  logger.warning(msg)
def error(msg): logger.error(msg)
