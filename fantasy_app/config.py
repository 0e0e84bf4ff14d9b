import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Secret key for Flask sessions
SECRET_KEY = os.getenv("FANTASY_SECRET_KEY", "dev-fantasy-secret")

# Token for scheduler-triggered admin endpoints (closing a gameweek)
ADMIN_TOKEN = os.getenv("FANTASY_ADMIN_TOKEN")

# Локальное зеркало JSON-документов (фолбэк, если S3 не настроен)
DATA_DIR = Path(os.getenv("FANTASY_DATA_DIR", str(BASE_DIR / "data")))
TRANSFER_STATE_DIR = DATA_DIR / "transfer_state"
TRANSFER_LOG_DIR = DATA_DIR / "transfers"
GAMEWEEK_DIR = DATA_DIR / "gameweeks"

# Transfer rules
TRANSFER_HIT_COST = 4
FREE_TRANSFER_CAP = int(os.getenv("FANTASY_FREE_TRANSFER_CAP", "2"))
UNLIMITED_TRANSFERS = 9999
SQUAD_SIZE = 15
MAX_TRANSFERS_PER_GAMEWEEK = int(os.getenv("FANTASY_MAX_TRANSFERS_PER_GAMEWEEK", str(SQUAD_SIZE)))
FIRST_GAMEWEEK = 1
LAST_GAMEWEEK = 38

# Chips that suspend transfer costs for one gameweek
WILDCARD = "wildcard"
FREE_HIT = "freeHit"
TRANSFER_CHIPS = (WILDCARD, FREE_HIT)
