"""Global configuration for the trigger engine."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Local timezone used for alarms, time constraints and calendar-day cooldowns
TIMEZONE = os.getenv("TIMEZONE", "UTC")

# Storage
DATA_DIR = Path(os.getenv("TRIGGER_ENGINE_HOME", ".")) / "trigger-engine"
TRIGGER_DB_PATH = os.getenv("TRIGGER_DB_PATH", str(DATA_DIR / "reminders.db"))

# Presentation webhook (optional, LogPresenter is used when unset)
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
NOTIFY_WEBHOOK_TOKEN = os.getenv("NOTIFY_WEBHOOK_TOKEN")

# Logging
LOG_DIR = Path(os.getenv("LOG_DIR", str(DATA_DIR / "logs")))
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
