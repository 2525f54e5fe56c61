import os
from dotenv import load_dotenv

load_dotenv()

UPSTREAM_URL = os.getenv("UPSTREAM_URL", "https://generativelanguage.googleapis.com")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
UPSTREAM_TIMEOUT_SECONDS = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", 300))
UPSTREAM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("UPSTREAM_CONNECT_TIMEOUT_SECONDS", 10))
ROOT_MESSAGE = os.getenv("ROOT_MESSAGE", "proxy is running")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes")
