"""
Global settings for 错题本 Pro.
Light, clean style with an indigo accent.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Page
PAGE_TITLE = "错题本 Pro"
PAGE_ICON = "📘"
PAGE_SUBTITLE = "智能版"

# Palette
THEME_PRIMARY = "#4F46E5"        # Indigo
THEME_PRIMARY_HOVER = "#4338CA"  # Darker indigo on hover
THEME_BG_PAGE = "#F1F5F9"        # Slate page background
THEME_CARD_BG = "#FFFFFF"        # Card background
THEME_CARD_BORDER = "#E2E8F0"    # Card borders
THEME_TEXT = "#1F2937"           # Near black
THEME_ANSWER_BG = "#F0FDF4"      # Revealed answer background
THEME_ANSWER_BORDER = "#22C55E"  # Revealed answer accent
THEME_CARD_SHADOW = "0 1px 3px rgba(0,0,0,0.08)"

# Tabs
TAB_UPLOAD = "upload"
TAB_BANK = "bank"
TAB_ANALYSIS = "analysis"
TAB_PRACTICE = "practice"
TABS = (TAB_UPLOAD, TAB_BANK, TAB_ANALYSIS, TAB_PRACTICE)

# Upload
ACCEPTED_IMAGE_TYPES = ["png", "jpg", "jpeg", "webp"]

# Local storage
STORAGE_KEY_QUESTION_BANK = "questionBank"

# Model gateway
API_KEY_ENV = "OPENAI_API_KEY"
VISION_MODEL = os.getenv("MISTAKES_VISION_MODEL", "gpt-4o")
TEXT_MODEL = os.getenv("MISTAKES_TEXT_MODEL", "gpt-4o")
CHAT_MODEL = os.getenv("MISTAKES_CHAT_MODEL", "gpt-4o")
LLM_TIMEOUT_S = float(os.getenv("MISTAKES_LLM_TIMEOUT_S", "90"))
LLM_MAX_RETRIES = int(os.getenv("MISTAKES_LLM_MAX_RETRIES", "2"))
PRACTICE_MAX_ITEMS = 5

# Logging
LOG_LEVEL = os.getenv("MISTAKES_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class MissingCredentialError(RuntimeError):
    """Raised when the model API key is not configured."""


def load_api_key() -> str:
    """
    Read the model API key from the environment (a local .env is honoured).

    Returns:
        The stripped API key.

    Raises:
        MissingCredentialError: If the key is absent or blank.
    """
    load_dotenv(PROJECT_ROOT / ".env")
    key = (os.getenv(API_KEY_ENV) or "").strip()
    if not key:
        raise MissingCredentialError(f"{API_KEY_ENV} environment variable not set")
    return key
