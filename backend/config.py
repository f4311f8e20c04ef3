"""Centralized configuration, read from the environment (and .env) once at import."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server (host side) ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Client side ---
HOST_ADDRESS = os.getenv("HOST_ADDRESS", "127.0.0.1:8000")  # host:port of the session host
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "10"))  # seconds

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10  # max messages per second per client
MAX_WS_MESSAGE_SIZE = 4096  # bytes

# --- Liveness ---
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "5"))  # seconds between pings
HEARTBEAT_TIMEOUT = float(os.getenv("HEARTBEAT_TIMEOUT", "15"))  # silence before a peer is dropped

# --- Question content ---
QUESTIONS_DIR = os.getenv(
    "QUESTIONS_DIR", os.path.join(os.path.dirname(os.path.abspath(__file__)), "sheets")
)
QUESTIONS_BASE_URL = os.getenv("QUESTIONS_BASE_URL", "")  # empty = read QUESTIONS_DIR
QUESTIONS_HTTP_TIMEOUT = int(os.getenv("QUESTIONS_HTTP_TIMEOUT", "10"))
MAX_DISTRACTORS = 3

# --- Game ---
VALID_DIFFICULTIES = ("easy", "medium", "hard")
DEFAULT_DIFFICULTY = "medium"
DIFFICULTY_DURATIONS = {"easy": 60, "medium": 30, "hard": 10}  # seconds per question
BASE_SCORE = 10
MAX_TIME_BONUS = 50
ANSWER_FEEDBACK_DELAY = float(os.getenv("ANSWER_FEEDBACK_DELAY", "1.5"))  # seconds
MAX_NICKNAME_LENGTH = 20
MAX_PLAYERS_PER_SESSION = 16
HOST_CODE_LENGTH = 6
HOST_PLAYS = os.getenv("HOST_PLAYS", "true").lower() in ("1", "true", "yes")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")  # empty = stdout only


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
