"""bizdash configuration: TOML file, admins file, and secret env vars."""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import tomli

logger = logging.getLogger("bizdash.config")

CONFIG_SEARCH_PATHS = (
    Path("config/config.toml"),
    Path.home() / ".config" / "bizdash" / "config.toml",
    Path("/etc/bizdash/config.toml"),
)
DEFAULT_ADMINS_FILE = "/etc/bizdash/admins"

# (env var, config section, attribute)
SECRET_ENV_VARS = (
    ("BIZDASH_SMTP_PASSWORD", "email", "smtp_password"),
    ("BIZDASH_NTFY_TOKEN", "ntfy", "token"),
    ("BIZDASH_NTFY_PASSWORD", "ntfy", "password"),
)


@dataclass
class LoggingConfig:
    level: str = "INFO"      # INFO or DEBUG
    output: str = "console"  # console, file, or both
    file: str = ""
    rotate: bool = True
    max_size_mb: int = 10
    backup_count: int = 5


@dataclass
class EmailConfig:
    """SMTP settings for customer-facing reminder emails."""
    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587  # 465 = implicit TLS
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = ""  # defaults to smtp_user
    timeout: float = 30.0  # seconds for SMTP connect and each reply


@dataclass
class NtfyConfig:
    """ntfy topic that receives a push per dispatched reminder."""
    enabled: bool = False
    server_url: str = "https://ntfy.sh"
    topic: str = ""
    token: str = ""
    username: str = ""
    password: str = ""
    priority: int = 4


@dataclass
class RemindersConfig:
    """Overdue-invoice reminder engine configuration."""
    enabled: bool = True
    cron: str = "0 9 * * *"  # daily at 9am in `timezone`
    timezone: str = "UTC"
    notifier: str = "log"  # "log", "email", or "ntfy"
    check_interval: int = 60  # seconds between schedule checks in daemon mode
    lock_path: Path = field(default_factory=lambda: Path("/tmp/bizdash-reminders.lock"))


@dataclass
class ApiConfig:
    """Admin HTTP API configuration."""
    host: str = "127.0.0.1"
    port: int = 8085
    tokens: dict[str, str] = field(default_factory=dict)  # bearer token -> user_id


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path("data/bizdash.db"))
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    reminders: RemindersConfig = field(default_factory=RemindersConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    admin_users: set[str] = field(default_factory=set)

    def is_admin(self, user_id: str) -> bool:
        """Only users listed as admins qualify; an empty admin set grants nobody."""
        return user_id in self.admin_users

    def user_for_token(self, token: str) -> str | None:
        if not token:
            return None
        return self.api.tokens.get(token)


# Section name -> dataclass, and the fields that need a Path
_SECTIONS = {
    "logging": LoggingConfig,
    "email": EmailConfig,
    "ntfy": NtfyConfig,
    "reminders": RemindersConfig,
    "api": ApiConfig,
}
_PATH_FIELDS = {"lock_path"}


def _build_section(cls, table: dict):
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in table.items():
        if key not in known:
            logger.warning("Ignoring unknown config key '%s' in [%s]", key, cls.__name__)
            continue
        if key in _PATH_FIELDS:
            value = Path(value)
        elif key == "tokens":
            value = dict(value)
        kwargs[key] = value
    return cls(**kwargs)


def load_admin_users(path: str | None = None) -> set[str]:
    """Read admin user IDs, one per line ('#' comments allowed).

    The path defaults to $BIZDASH_ADMINS_FILE, then /etc/bizdash/admins.
    A missing file means no admins.
    """
    admins_file = Path(path or os.environ.get("BIZDASH_ADMINS_FILE", DEFAULT_ADMINS_FILE))
    if not admins_file.is_file():
        return set()
    entries = (raw.strip() for raw in admins_file.read_text().splitlines())
    return {entry for entry in entries if entry and not entry.startswith("#")}


def _find_config_file() -> Path | None:
    return next((p for p in CONFIG_SEARCH_PATHS if p.exists()), None)


def load_config(config_path: Path | None = None) -> Config:
    """Load the TOML config; defaults when no file is found."""
    if config_path is None:
        config_path = _find_config_file()

    config = Config()
    if config_path is None or not config_path.exists():
        config.admin_users = load_admin_users()
        return config

    with open(config_path, "rb") as f:
        data = tomli.load(f)

    if "db_path" in data:
        config.db_path = Path(data["db_path"])
    for name, cls in _SECTIONS.items():
        if name in data:
            setattr(config, name, _build_section(cls, data[name]))

    # Inline admin_users are added to whatever the admins file lists
    config.admin_users = load_admin_users(data.get("admins_file"))
    config.admin_users.update(data.get("admin_users", []))

    for env_var, section, attr in SECRET_ENV_VARS:
        secret = os.environ.get(env_var)
        if secret:
            setattr(getattr(config, section), attr, secret)

    logger.debug("Loaded config from %s", config_path)
    return config
