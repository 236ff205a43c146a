"""
Utility functions for the Contextual Routing Engine.

This module provides:
- Environment variable loading and validation
- Logging configuration with structured JSON output
- Timing utilities for performance measurement
- ID generation for decisions and messages
- Input sanitization for safe logging
"""

import os
import re
import sys
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from dotenv import load_dotenv
from loguru import logger


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure structured JSON logging with Loguru.
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level or os.getenv("LOG_LEVEL", "INFO"),
        serialize=True
    )

    logger.info("Logging configuration complete")


# Optional environment variables with defaults
_FLOAT_VARS = {
    "CLASSIFIER_TIMEOUT_SECONDS": 2.0,
    "ROUTING_DEADLINE_SECONDS": 3.0,
    "STORE_LOCK_TIMEOUT_SECONDS": 1.0,
    "WEIGHT_HISTORY": 0.25,
    "WEIGHT_CONTEXT": 0.25,
    "WEIGHT_BUSINESS": 0.20,
    "WEIGHT_COMPLEXITY": 0.15,
    "WEIGHT_AVAILABILITY": 0.15,
    "BUSINESS_BASELINE": 0.5,
    "HISTORY_STEP": 0.1,
}

_INT_VARS = {
    "SATISFACTION_HISTORY_SIZE": 20,
    "DECISION_LOG_SIZE": 10000,
    "CONTEXT_TTL_HOURS": 24,
}

_STR_VARS = {
    "RULES_PATH": "",
    "OPENROUTER_API_KEY": "",
    "CLASSIFIER_MODEL": "anthropic/claude-sonnet-4",
    "CLASSIFIER_ENDPOINTS": "",
    "LOG_LEVEL": "INFO",
}


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate the engine's environment variables.

    Every variable is optional; numeric values that fail to parse fall back
    to their defaults with a warning.

    Returns:
        Dict[str, Any]: Configuration dictionary with typed values

    Raises:
        ConfigurationError: If a value is out of its allowed range
    """
    load_dotenv()

    config: Dict[str, Any] = {}

    for var, default in _FLOAT_VARS.items():
        value = os.getenv(var, default)
        try:
            config[var] = float(value)
        except ValueError:
            logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
            config[var] = default

    for var, default in _INT_VARS.items():
        value = os.getenv(var, default)
        try:
            config[var] = int(value)
        except ValueError:
            logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
            config[var] = default

    for var, default in _STR_VARS.items():
        config[var] = os.getenv(var, default)

    for var in ("CLASSIFIER_TIMEOUT_SECONDS", "ROUTING_DEADLINE_SECONDS", "STORE_LOCK_TIMEOUT_SECONDS"):
        if config[var] <= 0:
            raise ConfigurationError(f"{var} must be positive, got {config[var]}")

    for var in ("SATISFACTION_HISTORY_SIZE", "DECISION_LOG_SIZE", "CONTEXT_TTL_HOURS"):
        if config[var] < 1:
            raise ConfigurationError(f"{var} must be at least 1, got {config[var]}")

    logger.info("Environment configuration loaded and validated")
    return config


def generate_id(prefix: str) -> str:
    """
    Generate a prefixed unique identifier, e.g. ``dec_3f2a...``.

    Args:
        prefix: Short type prefix

    Returns:
        str: Unique identifier
    """
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input for safe logging by masking sensitive information.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sensitive_patterns = [
        r'sk-[a-zA-Z0-9]+',  # API keys starting with sk-
        r'Bearer\s+[a-zA-Z0-9]+',  # Bearer tokens
        r'\b[A-Za-z0-9]{20,}\b'  # Long alphanumeric strings (potential tokens)
    ]

    sanitized = text
    for pattern in sensitive_patterns:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time = None
        self.end_time = None

    def __enter__(self):
        self.start_time = get_utc_datetime()
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = get_utc_datetime()
        duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

        if exc_type is None:
            logger.info(f"Completed {self.operation_name}", duration_ms=duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds() * 1000
        return 0.0


def get_utc_datetime() -> datetime:
    """
    Get current datetime object in UTC timezone.

    Returns:
        datetime: Current UTC datetime object with timezone info
    """
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """
    Get current timestamp in ISO format with UTC timezone.

    Returns:
        str: Current timestamp in ISO format with timezone
    """
    return get_utc_datetime().isoformat()


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next access reloads it."""
    global _config
    _config = None


def initialize_app():
    """
    Initialize the application with logging and configuration.
    Call this at app startup.
    """
    setup_logging()
    config = get_config()

    logger.info(
        "Application initialization complete",
        classifier_timeout_seconds=config["CLASSIFIER_TIMEOUT_SECONDS"],
        routing_deadline_seconds=config["ROUTING_DEADLINE_SECONDS"],
        rules_path=config["RULES_PATH"] or "built-in"
    )
