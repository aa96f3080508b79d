"""
Configuration management (SSOT).

This module defines ALL configuration for the importer.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The retry bound and lock timeout are read from here only
- The form token never leaves the submission channel (no logging of it)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class QueueConfig:
    """Transaction queue settings."""

    # Attempts before a record is moved to failed transactions
    max_retry_attempts: int = 3
    # A lock held longer than this is considered abandoned
    lock_timeout_seconds: float = 30.0
    # Pause between queue steps while draining
    inter_attempt_delay_seconds: float = 1.0


@dataclass
class FormConfig:
    """Target form settings.

    SSOT for the submission endpoint:
    - submit_url: URL the page-automation side (or a form proxy) accepts records on
    - token: Optional bearer token sent as Authorization header
    - payor_id: EIN the rows are filed under, sent with every submission
    """

    submit_url: str | None = None
    token: str | None = None
    timeout_seconds: float = 30.0
    payor_id: str | None = None


@dataclass
class CSVConfig:
    """CSV interpretation settings."""

    # First cell of the section header and of every data row
    layout_tag: str = "1099-B"
    # Canonical field → extra header names tried before the built-in synonyms
    column_synonyms: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    queue: QueueConfig = field(default_factory=QueueConfig)
    form: FormConfig = field(default_factory=FormConfig)
    csv: CSVConfig = field(default_factory=CSVConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self, require_form: bool = False) -> list[str]:
        """Validate configuration completeness and consistency.

        Args:
            require_form: Also require a submit URL (for commands that submit)

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.queue.max_retry_attempts < 1:
            errors.append("queue.max_retry_attempts must be >= 1")
        if self.queue.lock_timeout_seconds <= 0:
            errors.append("queue.lock_timeout_seconds must be > 0")
        if self.queue.inter_attempt_delay_seconds < 0:
            errors.append("queue.inter_attempt_delay_seconds must be >= 0")
        if self.form.timeout_seconds <= 0:
            errors.append("form.timeout_seconds must be > 0")
        if not self.csv.layout_tag:
            errors.append("csv.layout_tag is required")

        if require_form and not self.form.submit_url:
            errors.append("form.submit_url is required to submit transactions")

        return errors

    def require_valid(self, require_form: bool = False) -> None:
        """Raise ConfigValidationError listing every problem found."""
        errors = self.validate(require_form=require_form)
        if errors:
            raise ConfigValidationError("; ".join(errors))


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - TAX_IMPORTER_STATE_DB
    - TAX_IMPORTER_LOCK_TIMEOUT (seconds)
    - FORM_SUBMIT_URL
    - FORM_TOKEN
    - FORM_PAYOR_ID
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Queue config
    queue_data = data.get("queue", {})
    lock_timeout = queue_data.get("lock_timeout_seconds", 30.0)
    lock_timeout_env = os.environ.get("TAX_IMPORTER_LOCK_TIMEOUT", "")
    if lock_timeout_env:
        try:
            lock_timeout = float(lock_timeout_env)
        except ValueError:
            pass  # Keep configured value

    queue = QueueConfig(
        max_retry_attempts=int(queue_data.get("max_retry_attempts", 3)),
        lock_timeout_seconds=float(lock_timeout),
        inter_attempt_delay_seconds=float(queue_data.get("inter_attempt_delay_seconds", 1.0)),
    )

    # Form config
    form_data = data.get("form", {})
    form = FormConfig(
        submit_url=os.environ.get("FORM_SUBMIT_URL", form_data.get("submit_url")),
        token=os.environ.get("FORM_TOKEN", form_data.get("token")),
        timeout_seconds=float(form_data.get("timeout_seconds", 30.0)),
        payor_id=os.environ.get("FORM_PAYOR_ID", form_data.get("payor_id")),
    )

    # CSV config
    csv_data = data.get("csv", {})
    synonyms = {
        str(key): [str(name) for name in (names or [])]
        for key, names in (csv_data.get("column_synonyms") or {}).items()
    }
    csv_config = CSVConfig(
        layout_tag=str(csv_data.get("layout_tag", "1099-B")),
        column_synonyms=synonyms,
    )

    # State DB
    state_db = os.environ.get("TAX_IMPORTER_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        queue=queue,
        form=form,
        csv=csv_config,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Tax Form Importer Configuration
#
# Environment overrides:
#   TAX_IMPORTER_STATE_DB, TAX_IMPORTER_LOCK_TIMEOUT,
#   FORM_SUBMIT_URL, FORM_TOKEN, FORM_PAYOR_ID

# Transaction queue
queue:
  max_retry_attempts: 3                # Attempts before a record is marked failed
  lock_timeout_seconds: 30             # Stale lock takeover after this long
  inter_attempt_delay_seconds: 1.0     # Pause between submissions

# Target form
form:
  submit_url: null                     # Endpoint accepting one record per request
  token: null                          # Optional bearer token
  timeout_seconds: 30
  payor_id: null                       # Payor EIN sent with every record

# CSV interpretation
csv:
  layout_tag: "1099-B"                 # Section tag of the tax document layout
  column_synonyms: {}                  # e.g. {sale_date: ["TRADE DATE"]}

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
