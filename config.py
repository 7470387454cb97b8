import json
import os
import platform
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import pytz

# ==========================================
#              CONFIGURATION
# ==========================================
BASE_URL = "https://www.meteox.com"
LOCALE_SEGMENT = "en-gb"
SHEET_NAME = "Drops Weather States"
CHROMIUM_BROWSER = "/usr/bin/chromium-browser"

BROWSER_MODES = ("built-in", "chromium-browser", "external", "automatic")

ENV_OVERRIDES = {
    "browser_mode": "BROWSER_MODE",
    "browser_path": "BROWSER_PATH",
    "city_code": "CITY_CODE",
    "base_url": "BASE_URL",
    "locale_segment": "LOCALE_SEGMENT",
    "language": "LANGUAGE",
    "timezone": "TIMEZONE",
    "sheet_name": "SHEET_NAME",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
}


class ConfigurationError(Exception):
    """Unsupported browser mode / platform combination or invalid setting."""


@dataclass
class Config:
    browser_mode: str = "automatic"
    browser_path: str = ""
    city_code: str = ""
    base_url: str = BASE_URL
    locale_segment: str = LOCALE_SEGMENT
    language: str = "en"
    timezone: str = "UTC"
    sheet_name: str = SHEET_NAME
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def city_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.locale_segment}/city/{self.city_code}"


def load_config(path: Optional[str] = None) -> Config:
    """
    Build the configuration from an optional JSON file plus environment overrides.

    Args:
        path: JSON file with keys named like the Config fields. Falls back to
              the CONFIG_FILE env var; a missing file is not an error.

    Returns:
        Validated Config instance
    """
    values = {}
    path = path or os.getenv("CONFIG_FILE")
    if path and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        known = {f.name for f in fields(Config)}
        values.update({k: v for k, v in raw.items() if k in known})

    for field_name, env_name in ENV_OVERRIDES.items():
        if os.getenv(env_name) is not None:
            values[field_name] = os.getenv(env_name)

    config = Config(**values)
    if not config.browser_mode:
        config.browser_mode = "automatic"
    if config.language not in ("en", "de"):
        config.language = "en"
    try:
        pytz.timezone(config.timezone)
    except pytz.UnknownTimeZoneError as e:
        raise ConfigurationError(f"unknown timezone {config.timezone}") from e
    return config


def _is_arm(machine: str) -> bool:
    # 32-bit ARM boards (armv6l, armv7l); aarch64 gets the bundled browser
    machine = machine.lower()
    return machine.startswith("arm") and machine != "arm64"


def resolve_executable(mode, browser_path="", system=None, machine=None):
    """
    Map a browser mode to the executable Playwright should launch.

    Returns None when the bundled browser is to be used. Raises
    ConfigurationError for combinations that cannot work on this platform.
    """
    system = system or platform.system()
    machine = machine or platform.machine()
    linux_arm = system.lower() == "linux" and _is_arm(machine)

    if mode == "built-in":
        if _is_arm(machine):
            raise ConfigurationError(f"browser mode {mode} not supported at platform {system} / {machine}")
        return None
    if mode == "chromium-browser":
        if not linux_arm:
            raise ConfigurationError(f"browser mode {mode} not supported at platform {system} / {machine}")
        return CHROMIUM_BROWSER
    if mode == "external":
        if not browser_path:
            raise ConfigurationError("browser mode external requires a browser path")
        return browser_path
    if mode == "automatic":
        return CHROMIUM_BROWSER if linux_arm else None
    raise ConfigurationError(f"browser mode {mode} not (yet) supported")
