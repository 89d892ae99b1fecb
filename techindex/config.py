# techindex/config.py
from dotenv import load_dotenv
import os

load_dotenv()


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# API Keys
GOOGLE_PLACES_API_KEY = os.getenv("GOOGLE_PLACES_API_KEY")

# Paths
DATA_DIR = os.getenv("TECHINDEX_DATA_DIR", "data")
ROSTER_PATH = os.getenv("TECHINDEX_ROSTER_PATH")
REGISTRATIONS_PATH = os.getenv("TECHINDEX_REGISTRATIONS_PATH")

# Runtime parameters
BATCH_SIZE = _int("TECHINDEX_BATCH_SIZE", 15)
CONCURRENCY = _int("TECHINDEX_CONCURRENCY", 10)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
DEFAULT_STATE = os.getenv("TECHINDEX_DEFAULT_STATE", "CO")

# Rollup
TOP_N = _int("TECHINDEX_TOP_N", 200)
TOP_NAMES_K = 8
LICENSE_TYPES_K = 12
STATUS_TOP_K = 6

# Density filter (defaults override with env)
MIN_ACTIVE = _int("TECHINDEX_ACTIVE_MIN", 2)
SOFT_MIN_RATIO = _float("TECHINDEX_ACTIVE_RATIO_MIN", 0.0)
MAX_OUT = _int("TECHINDEX_DENSITY_MAX_OUT", 800)
DENSITY_MIN_TOTAL = _int("TECHINDEX_DENSITY_MIN_TOTAL", 2)
DENSITY_MAX_TOTAL = _int("TECHINDEX_DENSITY_MAX_TOTAL", 7)

# Facility / org signal thresholds
ORG_SHARE_MIN = 0.35
SUITE_TECH_MIN = 10
INDIE_TECH_MAX = 9
MAILDROP_MIN_LICENSEES = 15
MAILDROP_MAX_ORG_SHARE = 0.2
MIN_ORG_NAME_LEN = 3
ORG_TOP_K = 5
SAMPLE_TECH_IDS = 8
OVERRIDE_CONFIRM_MIN = 60
METRO_ONLY = os.getenv("TECHINDEX_METRO_ONLY", "1") == "1"
METRO_CITIES = (
    "DENVER", "AURORA", "LAKEWOOD", "ARVADA", "WESTMINSTER", "THORNTON", "CENTENNIAL",
    "HIGHLANDS RANCH", "LITTLETON", "ENGLEWOOD", "WHEAT RIDGE", "COMMERCE CITY",
    "NORTHGLENN", "BROOMFIELD", "GOLDEN", "PARKER", "CASTLE ROCK", "LONE TREE",
)

# Place lookup queue
PLACES_MAX_PER_RUN = _int("TECHINDEX_PLACES_MAX_PER_RUN", 200)
PLACES_MIN_TECH_COUNT = 2
PLACES_MIN_ACTIVE_SHARE = 0.5

# Match table
AUTO_MATCH_MIN = _int("TECHINDEX_AUTO_MATCH_MIN", 70)
MATCH_REVIEW_SAMPLE = 50

# Segment thresholds
CORP_SUITE_MIN = 25
SEAT_AGGREG_MIN = 8

# URLs
PLACES_TEXTSEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
PLACES_DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
