"""
RigWarden Configuration
Mining rig agent for Raspberry Pi, Linux hosts and Android/Termux.
"""

import os

# === Identity ===
AGENT_NAME = "rigwarden"
AGENT_DISPLAY = "RigWarden"

# === Control Plane ===
API_URL = os.environ.get("RIGWARDEN_API_URL", "https://api.refurbminer.de")
RIG_TOKEN = os.environ.get("RIGWARDEN_RIG_TOKEN", "")
API_TIMEOUT = int(os.environ.get("RIGWARDEN_API_TIMEOUT", "15"))  # seconds
API_MAX_RETRIES = int(os.environ.get("RIGWARDEN_API_RETRIES", "3"))
API_RETRY_BACKOFF = 0.5

# === Filesystem ===
BASE_DIR = os.environ.get("RIGWARDEN_BASE_DIR", os.getcwd())
STORAGE_DIR = os.environ.get("RIGWARDEN_STORAGE_DIR", os.path.join(BASE_DIR, "storage"))
APPS_DIR = os.environ.get("RIGWARDEN_APPS_DIR", os.path.join(BASE_DIR, "apps"))
CONFIG_DIR = os.environ.get("RIGWARDEN_CONFIG_DIR", os.path.join(BASE_DIR, "config"))
RIG_CONFIG_PATH = os.path.join(CONFIG_DIR, "config.json")
TELEMETRY_FILE = os.path.join(STORAGE_DIR, "telemetry.json")
HISTORY_FILE = os.path.join(STORAGE_DIR, "hashrate-history.json")
MINER_LOG_FILE = os.path.join(STORAGE_DIR, "miner.log")
VCGENCMD_PATH = os.path.join(APPS_DIR, "vcgencmd", "vcgencmd")

# === Timers ===
SCHEDULE_INTERVAL = int(os.environ.get("RIGWARDEN_SCHEDULE_INTERVAL", "60"))    # seconds
HEALTH_CHECK_INTERVAL = int(os.environ.get("RIGWARDEN_HEALTH_INTERVAL", "30"))  # seconds
TELEMETRY_INTERVAL = int(os.environ.get("RIGWARDEN_TELEMETRY_INTERVAL", "60"))  # seconds
ACTIONS_INTERVAL = int(os.environ.get("RIGWARDEN_ACTIONS_INTERVAL", "60"))   # seconds
SCHEDULED_RESTART_TOLERANCE = 60  # seconds after the restart time that still counts as a match

# === Process Supervision ===
STOP_GRACE_PERIOD = float(os.environ.get("RIGWARDEN_STOP_GRACE", "10"))  # SIGTERM → SIGKILL
KILL_WAIT = 5.0
MAX_CONSECUTIVE_CRASHES = 3  # only escalates the log level, restart still happens

# === Telemetry ===
HISTORY_HORIZON = 60 * 60   # keep one hour of hashrate samples
MAX_HISTORY_POINTS = 60     # one per minute
MAX_TELEMETRY_BACKUPS = 5
PROBE_RETRIES = 3
PROBE_RETRY_DELAY = 1.0     # linear backoff: attempt × delay
PROBE_TIMEOUT = 15          # hard ceiling on a single probe inside a cycle
PROBE_WORKERS = 8

# === Rig Config ===
RIG_CONFIG_CACHE_TTL = 30   # seconds
MAX_CONFIG_BACKUPS = 5

# === Local Miner API ===
MINER_API_HOSTS = ["127.0.0.1", "localhost", "0.0.0.0"]
MINER_API_PORTS = [4068, 8080, 3333]
MINER_API_DEFAULT_PORT = 4068
MINER_API_TIMEOUT = 3       # seconds, per call
MINER_API_TOKEN = os.environ.get("RIGWARDEN_MINER_API_TOKEN", "xmrig")
SUPPORTED_MINERS = ("ccminer", "xmrig")

# === Network Probes ===
PING_TARGET = os.environ.get("RIGWARDEN_PING_TARGET", "api.refurbminer.de")
EXTERNAL_IP_URL = os.environ.get("RIGWARDEN_EXTERNAL_IP_URL", "https://api.ipify.org")
EXTERNAL_IP_TIMEOUT = 5
PING_TIMEOUT = 5
COMMAND_TIMEOUT = 10        # default ceiling for one shell-out

# --- Cache sizing / TTLs (seconds) ---
PING_CACHE_SIZE = 16
PING_CACHE_TTL = 60
TRAFFIC_CACHE_SIZE = 32
TRAFFIC_CACHE_TTL = 90      # must outlive one telemetry interval for rate computation
EXTERNAL_IP_CACHE_SIZE = 4
EXTERNAL_IP_CACHE_TTL = 5 * 60

# === Flightsheet ===
# Dotted paths whose change justifies a miner restart. Anything else
# (cosmetic fields, xmrig autosave artifacts such as cpu.argon2 / cpu.cn) is ignored.
SIGNIFICANT_FLIGHTSHEET_FIELDS = [
    "pools",            # pool list (wallet, mining pool)
    "threads",          # ccminer thread count
    "cpu.rx",           # xmrig thread map
    "randomx.mode",     # algorithm mode
    "cpu.enabled",
    "opencl.enabled",
    "cuda.enabled",
    "cpu.huge-pages",
    "cpu.memory-pool",
    "cpu.yield",
]
MOBILE_PRINT_TIME = 120     # xmrig print-time / health-print-time on Termux

# === HTTP Surface ===
HTTP_HOST = os.environ.get("RIGWARDEN_HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.environ.get("RIGWARDEN_HTTP_PORT", "4000"))

# === Logging ===
LOG_FILE = os.environ.get("RIGWARDEN_LOG_FILE", "/tmp/rigwarden.log")
LOG_LEVEL = os.environ.get("RIGWARDEN_LOG_LEVEL", "INFO")
