"""
Settings — Default configuration values for the freight booking stager.

This module provides the DEFAULT_SETTINGS dict that the orchestrator uses as
fallback values when environment variables are not set. The actual
configuration is loaded from .env at runtime.

Configuration precedence (highest to lowest):
  1. CLI flags (--debug)
  2. Environment variables (from .env file)
  3. DEFAULT_SETTINGS (this file)

Settings reference:
  API_BASE_URL             Order-processing backend (shipped orders, carrier calls)
  PYTHON_API_BASE_URL      Job service running Excel imports and BOL scraping
  XPO_TOKEN, ESTES_TOKEN   Carrier bearer tokens (no default; carrier calls fail without them)
  CACHE_FILE               JSON file backing the durable staging cache
  POLL_INTERVAL_SECONDS    Seconds between job status polls
  POLL_MAX_ATTEMPTS        Polls per job before giving up (0 = no limit)
  REQUEST_TIMEOUT_SECONDS  Per-request HTTP timeout
  DEBUG                    Whether to print verbose output
"""

DEFAULT_SETTINGS = {
    "API_BASE_URL": "http://localhost:5000/api/v1",
    "PYTHON_API_BASE_URL": "http://localhost:8000",
    "CACHE_FILE": "./output/ltl_orders_cache.json",
    "POLL_INTERVAL_SECONDS": 2,
    "POLL_MAX_ATTEMPTS": 900,
    "REQUEST_TIMEOUT_SECONDS": 60,
    "DEBUG": False,
}
