"""Global constants for orbit."""

# Watched sources (relative to the project root)

DEFAULT_WATCH_PATHS = ("app", ".env")
DEFAULT_ENV_FILE = ".env"
ORBIT_DIR_NAME = ".orbit"
DEV_CONFIG_FILENAME = "dev.json"

# Dev loop timings (seconds)

DEBOUNCE_DELAY = 0.3
CRASH_DETECTION_WINDOW = 15.0
RETRY_WAIT_TIME = 2.0
SETTLE_DELAY = 0.2
KILL_TIMEOUT = 3.0
KILL_GRACE = 1.0
SLOW_BUILD_THRESHOLD = 15.0

# Retry configuration
MAX_RETRY_ATTEMPTS = 5

# Server process defaults

DEFAULT_SERVER_DIR = "server"
DEFAULT_SERVER_COMMAND = ("cargo", "run", "--quiet")
DEFAULT_SERVER_ENV = {"CARGO_INCREMENTAL": "1"}

# Readiness banner printed by the server once it accepts connections
READY_MARKERS = ("Titan server running", "████████╗")
BANNER_MARKERS = READY_MARKERS + ("╚══", "   ██║", "   ╚═╝")

# Build output
BUILD_OUTPUT_DIR = ".titan"
COMPILED_ENTRY_NAME = "app.compiled.mjs"
