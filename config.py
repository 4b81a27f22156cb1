"""Centralized configuration for the OPD scheduling core.

Values come from the environment (a ``.env`` file in the working directory
is loaded first) and fall back to the defaults below.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

WORKING_DIR = Path.cwd()

load_dotenv(WORKING_DIR / ".env")

LOG_LEVEL = os.getenv("OPD_LOG_LEVEL", "INFO")

# How long a booking or leave approval waits for a (doctor, date) lock
LOCK_TIMEOUT_SECONDS = float(os.getenv("OPD_LOCK_TIMEOUT_SECONDS", "5.0"))

# Schedule defaults used when a doctor publishes a day without overrides
DEFAULT_SLOT_DURATION = int(os.getenv("OPD_DEFAULT_SLOT_DURATION", "30"))
DEFAULT_MAX_PATIENTS_PER_SLOT = int(os.getenv("OPD_DEFAULT_MAX_PATIENTS_PER_SLOT", "1"))

# Queue wait estimation
DEFAULT_CONSULTATION_MINUTES = float(os.getenv("OPD_DEFAULT_CONSULTATION_MINUTES", "10"))
CONSULTATION_AVG_WINDOW = int(os.getenv("OPD_CONSULTATION_AVG_WINDOW", "10"))

# No-show cutoff: slot end + grace
MISSED_GRACE_MINUTES = int(os.getenv("OPD_MISSED_GRACE_MINUTES", "30"))

# Half-day sessions when the doctor has no working hours on record ("HH:MM-HH:MM")
MORNING_SESSION = os.getenv("OPD_MORNING_SESSION", "09:00-13:00")
AFTERNOON_SESSION = os.getenv("OPD_AFTERNOON_SESSION", "14:00-18:00")

LEAVE_CANCELLATION_REASON = os.getenv(
    "OPD_LEAVE_CANCELLATION_REASON", "doctor on approved leave"
)
