from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_launch_options() -> dict:
    opts: dict = {"chromium_sandbox": True}
    # Prefer system chromium (has proprietary codec support, e.g. h264)
    # over the bundled chromium (compiled without proprietary codecs).
    system_chromium = shutil.which("chromium") or shutil.which("chromium-browser")
    if system_chromium:
        opts["executable_path"] = system_chromium
    return opts


class ViewportSize(BaseModel):
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class BrowserConfig(BaseModel):
    browser_name: Literal["chromium", "firefox", "webkit"] = "chromium"
    headless: bool = True
    user_data_dir: str | None = None
    viewport: ViewportSize | None = None
    launch_options: dict = Field(default_factory=_default_launch_options)
    context_options: dict = Field(default_factory=dict)


class TimeoutsConfig(BaseModel):
    # Engine-side timeouts, milliseconds.
    action: int = 5000
    navigation: int = 30000
    # Client/daemon timeouts, seconds.
    startup: float = 15.0
    command: float = 120.0
    idle: float = 0.0


class VebConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VEB_",
        env_nested_delimiter="__",
    )

    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v


def _parse_viewport_size(value: str) -> ViewportSize:
    """Parse a 'WxH' string into a viewport size."""
    parts = value.lower().split("x")
    if len(parts) != 2:
        raise ValueError(f"VEB_VIEWPORT_SIZE must be in 'WxH' format, got '{value}'")
    return ViewportSize(width=int(parts[0]), height=int(parts[1]))


def _is_truthy(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def apply_env_overrides(config: VebConfig) -> VebConfig:
    """Read specific VEB_* env vars and apply them as overrides.

    These env vars don't map directly via pydantic-settings nested delimiter
    conventions, so they are handled manually here.
    """

    # VEB_HEADLESS -> browser.headless
    headless = os.environ.get("VEB_HEADLESS")
    if headless is not None:
        config.browser.headless = _is_truthy(headless)

    # VEB_CHANNEL -> browser.launch_options.channel
    channel = os.environ.get("VEB_CHANNEL")
    if channel is not None:
        config.browser.launch_options["channel"] = channel

    # VEB_EXECUTABLE_PATH -> browser.launch_options.executable_path
    executable_path = os.environ.get("VEB_EXECUTABLE_PATH")
    if executable_path is not None:
        config.browser.launch_options["executable_path"] = executable_path

    # VEB_VIEWPORT_SIZE -> browser.viewport
    viewport_size = os.environ.get("VEB_VIEWPORT_SIZE")
    if viewport_size is not None:
        config.browser.viewport = _parse_viewport_size(viewport_size)

    # VEB_USER_AGENT -> browser.context_options.user_agent
    user_agent = os.environ.get("VEB_USER_AGENT")
    if user_agent is not None:
        config.browser.context_options["user_agent"] = user_agent

    # VEB_NO_SANDBOX -> browser.launch_options.chromium_sandbox = False
    no_sandbox = os.environ.get("VEB_NO_SANDBOX")
    if no_sandbox is not None and _is_truthy(no_sandbox):
        config.browser.launch_options["chromium_sandbox"] = False

    # VEB_IGNORE_HTTPS_ERRORS -> browser.context_options.ignore_https_errors
    ignore_https = os.environ.get("VEB_IGNORE_HTTPS_ERRORS")
    if ignore_https is not None:
        config.browser.context_options["ignore_https_errors"] = _is_truthy(ignore_https)

    return config


def load_config(config_path: str | None = None) -> VebConfig:
    """Load veb configuration from a JSON file and/or environment variables.

    Priority (highest to lowest):
        1. The VEB_* overrides handled by ``apply_env_overrides``
        2. Explicitly provided config_path JSON file, or the default
           config file at .veb/config.json in cwd
        3. Nested VEB_* variables such as VEB_TIMEOUTS__STARTUP
        4. Built-in defaults

    Args:
        config_path: Optional path to a JSON configuration file. If not
            provided, the function looks for ``.veb/config.json`` in the
            current working directory.

    Returns:
        A fully resolved ``VebConfig`` instance.
    """
    file_values: dict = {}

    if config_path is not None:
        config_file = Path(config_path)
        if config_file.is_file():
            file_values = json.loads(config_file.read_text(encoding="utf-8"))
    else:
        default_config = Path.cwd() / ".veb" / "config.json"
        if default_config.is_file():
            file_values = json.loads(default_config.read_text(encoding="utf-8"))

    # pydantic-settings gives init values precedence over nested env vars.
    config = VebConfig(**file_values)
    config = apply_env_overrides(config)
    return config
