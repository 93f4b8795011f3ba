import os

# Built-in privacy deny-list. Matched case-insensitively as substrings of the
# active app name and merged with the user's own excluded apps.
BUILTIN_EXCLUDED_APPS = (
    "password",
    "1password",
    "lastpass",
    "keychain",
    "bitwarden",
    "dashlane",
    "banking",
    "chase",
    "wells fargo",
    "bank of america",
    "credit card",
    "venmo",
    "paypal",
    "private",
    "incognito",
    "medical",
    "health",
    "doctor",
    "pharmacy",
    "hipaa",
)

DEFAULT_CAPTURE_INTERVAL_MS = 30_000
CAPTURE_TIMEOUT_SECONDS = 5
WINDOW_QUERY_TIMEOUT_SECONDS = 2
OCR_TIMEOUT_SECONDS = 30

# Text shorter than this never reaches the analyzer.
MIN_TEXT_LENGTH = 20
# Text shorter than this never reaches the LLM tier.
MIN_LLM_TEXT_LENGTH = 50
MAX_LLM_TEXT_CHARS = 3000

BATCH_DELAY_SECONDS = 2.0
MAX_BATCH_SIZE = 3

HEURISTIC_CONFIDENCE = 0.7
FALLBACK_OCR_CONFIDENCE = 0.8

FOLLOW_UP_SCAN_INTERVAL_SECONDS = 5 * 60
FOLLOW_UP_INITIAL_DELAY_SECONDS = 30
FOLLOW_UP_LOOKBACK_MS = 2 * 60 * 60 * 1000
EAGER_MATCH_LOOKBACK_MS = 60 * 60 * 1000

TEMP_DIR_NAME = "followthrough-captures"
CAPTURE_FILE_PREFIX = "capture_"

DEFAULT_DB_PATH = os.environ.get(
    "FOLLOWTHROUGH_DB_PATH",
    os.path.join(os.path.expanduser("~"), ".followthrough", "context.db"),
)
