"""Configuration for the support desk (stores, Jey assistant, booking, presence)."""

import os

REDIS_URL: str = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
REDIS_CONN_TIMEOUT: int = int(os.environ.get("REDIS_CONN_TIMEOUT", "5"))
# "memory" keeps everything in-process (single API process); "redis" is required for the ARQ worker.
STORE_BACKEND: str = os.environ.get("STORE_BACKEND", "memory")
SEED_DEMO_PARTNERS: bool = os.environ.get("SEED_DEMO_PARTNERS", "1") == "1"

# Optional: webhook receiving notification events (ticket created, assigned, escalated, message, booking).
NOTIFY_WEBHOOK_URL: str = os.environ.get("NOTIFY_WEBHOOK_URL", "")

# --- Jey: text-completion service ---
OPENAI_API_KEY: str = os.environ.get("OPENAI_API_KEY", "")
JEY_MODEL: str = os.environ.get("JEY_MODEL", "gpt-3.5-turbo")
JEY_MAX_TOKENS: int = int(os.environ.get("JEY_MAX_TOKENS", "250"))
JEY_TEMPERATURE: float = float(os.environ.get("JEY_TEMPERATURE", "0.7"))
JEY_TIMEOUT_SECONDS: float = float(os.environ.get("JEY_TIMEOUT_SECONDS", "20"))

# --- Jey: circuit breaker around the completion service ---
JEY_LATENCY_MS: int = int(os.environ.get("JEY_LATENCY_MS", "15000"))
CIRCUIT_COOLDOWN_SECONDS: int = int(os.environ.get("CIRCUIT_COOLDOWN_SECONDS", "60"))
CIRCUIT_HALF_OPEN_PROBES: int = int(os.environ.get("CIRCUIT_HALF_OPEN_PROBES", "3"))

# --- Chat ---
RECONCILE_WINDOW_SECONDS: float = float(os.environ.get("RECONCILE_WINDOW_SECONDS", "5"))
TYPING_IDLE_SECONDS: int = int(os.environ.get("TYPING_IDLE_SECONDS", "3"))

# --- Partners & booking ---
PARTNER_SUGGESTION_LIMIT: int = int(os.environ.get("PARTNER_SUGGESTION_LIMIT", "3"))
BOOKING_CODE_PREFIX: str = os.environ.get("BOOKING_CODE_PREFIX", "ER")

ACTIVITY_MAX_EVENTS: int = int(os.environ.get("ACTIVITY_MAX_EVENTS", "200"))
