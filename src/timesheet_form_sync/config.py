from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .models import QuarterDefinition
from .quarters import DEFAULT_QUARTERS, default_quarters, mock_quarter, validate_quarter_set
from .rules import DEFAULT_CHARGE_CODES, DEFAULT_PROJECTS_WITHOUT_TOOLS, DEFAULT_TOOLS_WITHOUT_CHARGE_CODES
from .util.backoff import BackoffPolicy


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_SERVICE_NAME_RE = re.compile(r"^[a-z0-9_-]+$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Provide a sensible env-only config so most users only need `.env`.

    YAML remains an optional override (quarter windows, timing tweaks).
    """
    return {
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=True),
            "slow_mo_ms": _env_int("BROWSER_SLOW_MO_MS", 0),
            "channel": os.getenv("BROWSER_CHANNEL", ""),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
        },
        "submission": {
            "service_name": os.getenv("SUBMISSION_SERVICE", "smartsheet"),
            "stale_after_minutes": _env_int("STALE_AFTER_MINUTES", 30),
            "treat_unverified_as_failure": _env_bool("TREAT_UNVERIFIED_AS_FAILURE", default=False),
            "mock_mode": _env_bool("TIMESHEET_MOCK_MODE", default=False),
            "mock_base_url": os.getenv("MOCK_WEBSITE_URL", "http://localhost:3000"),
            "mock_form_id": os.getenv("MOCK_FORM_ID", "0197cbae7daf72bdb96b3395b500d414"),
        },
        "quarters": [dict(q) for q in DEFAULT_QUARTERS],
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/timesheet.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/timesheet.log"),
        },
    }


class BrowserConfig(BaseModel):
    headless: bool = True
    slow_mo_ms: int = 0
    # Empty means Playwright's bundled Chromium (with a chrome/msedge fallback when it is missing).
    channel: str = ""
    debug_dir: str = "data/debug"

    @model_validator(mode="after")
    def _normalize(self) -> "BrowserConfig":
        channel = (self.channel or "").strip().lower()
        if channel and channel not in {"chrome", "msedge", "chromium"}:
            raise ValueError("browser.channel must be one of: chrome, msedge, chromium (or empty)")
        if self.slow_mo_ms < 0:
            raise ValueError("browser.slow_mo_ms must not be negative")
        self.channel = channel
        return self


class SubmissionConfig(BaseModel):
    """
    Submission policy.

    `treat_unverified_as_failure` decides what happens when the vendor form gives no recognizable
    confirmation after submit. The vendor's confirmation UI is not stable, so the default keeps rows
    as submitted and only logs a warning.
    """

    service_name: str = "smartsheet"
    stale_after_minutes: int = 30
    treat_unverified_as_failure: bool = False

    # Local stand-in for the vendor form. Never on unless explicitly enabled.
    mock_mode: bool = False
    mock_base_url: str = "http://localhost:3000"
    mock_form_id: str = "0197cbae7daf72bdb96b3395b500d414"

    @model_validator(mode="after")
    def _validate(self) -> "SubmissionConfig":
        service = (self.service_name or "").strip().lower()
        if not _SERVICE_NAME_RE.match(service):
            raise ValueError("submission.service_name must be a slug like 'smartsheet'")
        if self.stale_after_minutes <= 0:
            raise ValueError("submission.stale_after_minutes must be positive")

        base = (self.mock_base_url or "").strip().rstrip("/")
        if self.mock_mode:
            parsed = urlparse(base)
            if not parsed.scheme or not parsed.netloc:
                raise ValueError("submission.mock_base_url must be a full URL like 'http://localhost:3000'")
            if not (self.mock_form_id or "").strip():
                raise ValueError("submission.mock_form_id is required when mock_mode is on")

        self.service_name = service
        self.mock_base_url = base
        self.mock_form_id = (self.mock_form_id or "").strip()
        return self


class EntryRulesConfig(BaseModel):
    """
    Which dropdowns each entry must fill in.

    A project outside `projects_without_tools` needs a tool; a tool outside
    `tools_without_charge_codes` needs a charge code from `charge_codes`.
    An empty `projects` (or `charge_codes`) list accepts any value.
    """

    projects: list[str] = Field(default_factory=list)
    projects_without_tools: list[str] = Field(default_factory=lambda: list(DEFAULT_PROJECTS_WITHOUT_TOOLS))
    tools_without_charge_codes: list[str] = Field(default_factory=lambda: list(DEFAULT_TOOLS_WITHOUT_CHARGE_CODES))
    charge_codes: list[str] = Field(default_factory=lambda: list(DEFAULT_CHARGE_CODES))

    @model_validator(mode="after")
    def _strip(self) -> "EntryRulesConfig":
        for name in ("projects", "projects_without_tools", "tools_without_charge_codes", "charge_codes"):
            values = [str(v).strip() for v in getattr(self, name) or []]
            setattr(self, name, [v for v in values if v])
        return self


class StateConfig(BaseModel):
    db_path: str = "data/timesheet.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/timesheet.log"


class AppConfig(BaseModel):
    browser: BrowserConfig = BrowserConfig()
    timing: BackoffPolicy = BackoffPolicy()
    submission: SubmissionConfig = SubmissionConfig()
    quarters: list[QuarterDefinition] = Field(default_factory=default_quarters)
    entry_rules: EntryRulesConfig = EntryRulesConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()

    def active_quarters(self) -> list[QuarterDefinition]:
        """
        The quarter set rows are routed against. Mock mode swaps in a single always-matching quarter.
        """
        if self.submission.mock_mode:
            return [mock_quarter(self.submission.mock_base_url, self.submission.mock_form_id)]
        return list(self.quarters)


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    cfg = AppConfig.model_validate(merged)

    # A gap or overlap between quarters is fatal at load time.
    validate_quarter_set(cfg.quarters)
    return cfg
