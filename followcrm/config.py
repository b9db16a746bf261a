"""
Follow-up CRM Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


def _optional_int(name):
    raw = os.getenv(name, '').strip()
    return int(raw) if raw else None


class Config:
    """Application configuration."""

    # Database — must be set in .env; never hardcode credentials here
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set — cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")
    DB_CONNECT_TIMEOUT = int(os.getenv('DB_CONNECT_TIMEOUT', '10'))

    # Naive datetimes from callers are read in this zone; also used for display
    TIMEZONE = os.getenv('TIMEZONE', 'America/Sao_Paulo')

    # Pagination
    DEFAULT_PAGE_SIZE = int(os.getenv('DEFAULT_PAGE_SIZE', '20'))
    MAX_PAGE_SIZE = int(os.getenv('MAX_PAGE_SIZE', '100'))

    # Client search matches stored values of these custom fields
    CLIENT_SEARCH_FIELDS = [
        name.strip()
        for name in os.getenv('CLIENT_SEARCH_FIELDS', 'Nome,Empresa').split(',')
        if name.strip()
    ]

    # Users
    MIN_PASSWORD_LENGTH = int(os.getenv('MIN_PASSWORD_LENGTH', '6'))

    # Acting user for the terminal CLI
    CURRENT_USER_ID = _optional_int('CURRENT_USER_ID')


# Singleton instance
config = Config()
