from dotenv import load_dotenv
import logging
import os
from pathlib import Path

def init_env() -> None:
    # Load .env if present; don't override OS-provided env vars
    load_dotenv(override=False)

def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

# Data directory for the SQLite file when no database URL is given
DATA_DIR = os.getenv("PREVISION_DATA_DIR", str(Path("data").absolute()))

DATABASE_URL = os.getenv(
    "PREVISION_DATABASE_URL",
    f"sqlite:///{os.path.join(DATA_DIR, 'prevision.sqlite3')}",
)

# Fallback price ratios when a tariff has no explicit tier price
FONASA_RATIO = float(os.getenv("FONASA_PRICE_RATIO", "0.70"))
ISAPRE_RATIO = float(os.getenv("ISAPRE_PRICE_RATIO", "0.85"))

# Page size of the pending-validation listing
PAGE_SIZE = int(os.getenv("PENDING_PAGE_SIZE", "5"))
