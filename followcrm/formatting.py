"""
Display helpers for terminal output.

WhatsApp links are formatted text only; nothing is ever sent.
"""

import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from followcrm.config import config

_NON_DIGITS = re.compile(r'\D')


def whatsapp_link(phone: str) -> str:
    """wa.me click-to-chat link for an international number."""
    return f"https://wa.me/{_NON_DIGITS.sub('', phone or '')}"


def format_whatsapp(phone: str) -> str:
    """Group Brazilian numbers for reading; anything else is returned unchanged."""
    digits = _NON_DIGITS.sub('', phone or '')
    international = (phone or '').strip().startswith('+')
    if len(digits) == 13 and digits.startswith('55'):
        return f"+{digits[:2]} {digits[2:4]} {digits[4:9]}-{digits[9:]}"
    if len(digits) == 11 and not international:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    return phone


def format_datetime(value: Optional[datetime]) -> str:
    """dd/mm/YYYY HH:MM in the configured zone, or '-' when unset."""
    if value is None:
        return '-'
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(config.TIMEZONE))
    return value.strftime('%d/%m/%Y %H:%M')
