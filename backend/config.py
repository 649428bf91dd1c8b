"""
Backend configuration settings
Centralized configuration for paths, playback policy, and environment-based settings
"""
import os
from pathlib import Path


# ===== Base Directories =====

# Backend root directory
BACKEND_ROOT = Path(__file__).parent

# Data directory (database, runtime files)
DATA_DIR = os.getenv("DATA_DIR", str(BACKEND_ROOT / "database"))


# ===== File Paths =====

# Database file path
DATABASE_PATH = os.getenv("DATABASE_PATH", str(Path(DATA_DIR) / "narration.db"))


# ===== Database Configuration =====

# Database connection timeout (seconds)
DB_CONNECTION_TIMEOUT = float(os.getenv("DB_CONNECTION_TIMEOUT", "30.0"))

# Database query limits
DB_LEXICON_RULES_LIMIT = int(os.getenv("DB_LEXICON_RULES_LIMIT", "1000"))
DB_READING_HISTORY_LIMIT = int(os.getenv("DB_READING_HISTORY_LIMIT", "500"))


# ===== Playback Timeline =====

# Base narration rate at 1.0x speed (180 wpm * 5 chars per word)
PLAYBACK_CHARS_PER_MINUTE = float(os.getenv("PLAYBACK_CHARS_PER_MINUTE", "900"))

# Playback speed bounds
PLAYBACK_MIN_SPEED = float(os.getenv("PLAYBACK_MIN_SPEED", "0.5"))
PLAYBACK_MAX_SPEED = float(os.getenv("PLAYBACK_MAX_SPEED", "3.0"))


# ===== Smart Resume =====

# Pause durations (seconds) at which the rewind amount steps up
SMART_RESUME_SHORT_PAUSE_SECONDS = float(os.getenv("SMART_RESUME_SHORT_PAUSE_SECONDS", "300"))
SMART_RESUME_LONG_PAUSE_SECONDS = float(os.getenv("SMART_RESUME_LONG_PAUSE_SECONDS", "86400"))
SMART_RESUME_RESET_PAUSE_SECONDS = float(os.getenv("SMART_RESUME_RESET_PAUSE_SECONDS", "172800"))

# Rewind in queue items for providers without a time axis
SMART_RESUME_LOCAL_SHORT_ITEMS = int(os.getenv("SMART_RESUME_LOCAL_SHORT_ITEMS", "2"))
SMART_RESUME_LOCAL_LONG_ITEMS = int(os.getenv("SMART_RESUME_LOCAL_LONG_ITEMS", "5"))

# Rewind in seconds for time-addressable providers
SMART_RESUME_CLOUD_SHORT_SECONDS = float(os.getenv("SMART_RESUME_CLOUD_SHORT_SECONDS", "10"))
SMART_RESUME_CLOUD_LONG_SECONDS = float(os.getenv("SMART_RESUME_CLOUD_LONG_SECONDS", "60"))


# ===== Provider Configuration =====

# Cloud synthesis endpoint (engine server exposing POST /generate)
CLOUD_TTS_URL = os.getenv("CLOUD_TTS_URL", "http://127.0.0.1:8766")

# HTTP client timeout for cloud synthesis (seconds)
CLOUD_TTS_TIMEOUT = float(os.getenv("CLOUD_TTS_TIMEOUT", "60"))

# Number of synthesized utterances kept for look-ahead playback
PRELOAD_CACHE_SIZE = int(os.getenv("PRELOAD_CACHE_SIZE", "8"))

# Provider used when a cloud provider fails
FALLBACK_PROVIDER_ID = os.getenv("FALLBACK_PROVIDER_ID", "local")


# ===== SSE Configuration =====

# SSE keepalive timeout (seconds)
SSE_KEEPALIVE_TIMEOUT = float(os.getenv("SSE_KEEPALIVE_TIMEOUT", "15.0"))

# Pending events per client before a slow client is disconnected
SSE_CLIENT_QUEUE_SIZE = int(os.getenv("SSE_CLIENT_QUEUE_SIZE", "256"))


# ===== Logging =====

# Optional log file (rotated); empty keeps logging on stderr only
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_ROTATION = os.getenv("LOG_ROTATION", "10 MB")
LOG_RETENTION = os.getenv("LOG_RETENTION", "7 days")
