from enum import StrEnum


class ENV(StrEnum):
    DEV = "DEV"
    TEST = "TEST"
    PROD = "PROD"


# Hard upper bound for any single request against the backend
DEFAULT_SYNC_TIMEOUT_SECONDS = 20

# Sessions, scenarios and wallets rarely change while a participant is running
EXPERIMENT_DATA_TTL_SECONDS = 30 * 60
DEFAULT_TTL_SECONDS = 5 * 60
PROGRESS_TTL_SECONDS = 24 * 60 * 60

CACHE_PERSIST_DEBOUNCE_SECONDS = 0.1
PREFETCH_DELAY_SECONDS = 0.5

TIMER_TICK_SECONDS = 1.0
AUTO_ADVANCE_GRACE_SECONDS = 5.0
