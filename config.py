"""
Copyright (c) 2025 Amit Kadam

All Rights Reserved. No part of this software may be copied, reproduced, distributed, or used in derivative works without the prior written permission of the copyright holder.

For permission requests, contact: amitkadam96k@gmail.com
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    AUTH_SECRET = os.environ.get("AUTH_SECRET")
    SECRET_KEY = os.environ.get("SECRET_KEY")
    ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME")
    ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD")
    DATABASE = os.environ.get("DATABASE", "tutor.db")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    AUTH_COOKIE_SECURE = _env_flag("AUTH_COOKIE_SECURE", True)

    # Flask's own session only carries flash messages; keep it off the
    # "session" name used by the auth cookie.
    SESSION_COOKIE_NAME = "tutor_flash"
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
