"""Configuration management for the ANC PrEP decision engine."""

import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    # Fall back to template for defaults
    template_path = Path(__file__).parent / ".env.template"
    if template_path.exists():
        load_dotenv(template_path)


class Config:
    """Engine configuration."""

    # Logging
    LOG_LEVEL: str = os.getenv("PREP_LOG_LEVEL", "INFO").upper()

    # Include the rule trace in snapshot payloads
    INCLUDE_TRACE: bool = os.getenv("PREP_INCLUDE_TRACE", "true").lower() == "true"

    # Default assessor written into saved records by the CLI
    ASSESSED_BY: str | None = os.getenv("PREP_ASSESSED_BY") or None

    @classmethod
    def log_level(cls) -> int:
        """Resolve LOG_LEVEL to a logging constant (INFO when unrecognised)."""
        level = logging.getLevelName(cls.LOG_LEVEL)
        return level if isinstance(level, int) else logging.INFO


def setup_logging(verbose: bool = False, stream=None) -> None:
    """Configure logging.

    Args:
        verbose: If True, use DEBUG level regardless of PREP_LOG_LEVEL.
        stream: Handler stream (stdout when omitted).
    """
    level = logging.DEBUG if verbose else Config.log_level()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(stream or sys.stdout),
        ],
    )


config = Config()
