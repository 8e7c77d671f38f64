# stockbridge/utils/logger.py
import sys, time

from ..config import LOG_LEVEL as _CONFIGURED

LEVELS = {"ERROR": 40, "WARN": 30, "INFO": 20, "DEBUG": 10, "NONE": 100}
_threshold = LEVELS.get(_CONFIGURED.upper(), 20)

def _ts():
    return time.strftime("%H:%M:%S")

def log(level: str, msg: str):
    if LEVELS[level] >= _threshold:
        print(f"[{_ts()}][{level}] {msg}", file=sys.stdout if LEVELS[level] < 40 else sys.stderr, flush=True)

def debug(msg): log("DEBUG", msg)
def info(msg):  log("INFO", msg)
def warn(msg):  log("WARN", msg)
def error(msg): log("ERROR", msg)
