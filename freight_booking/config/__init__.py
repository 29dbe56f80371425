"""Configuration defaults for the freight booking stager."""

from .settings import DEFAULT_SETTINGS
