from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__version__ = "0.4.0"

MANIFEST_FILENAME = "plugins.json"
LOCKFILE_FILENAME = "plugins.lock"
PLUGINS_DIRNAME = "plugins"
DEFAULT_ENV_FILENAME = ".env"
DEFAULT_MC_VERSION = "1.21.11"
DEFAULT_USER_AGENT = f"mpm/{__version__}"
DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_SEARCH_TIMEOUT = 180.0

USER_CONFIG_DIR = Path.home() / ".config" / "mpm"
USER_CONFIG_FILENAME = "config.json"
USER_CONFIG_PATH = USER_CONFIG_DIR / USER_CONFIG_FILENAME


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MPM_", extra="ignore")

    dir: Optional[Path] = None
    user_agent: Optional[str] = None
    http_timeout: Optional[float] = None
    search_timeout: Optional[float] = None


class MpmConfig(BaseModel):
    root: Path
    plugins_dir: Path
    manifest_path: Path
    lockfile_path: Path
    user_agent: str = DEFAULT_USER_AGENT
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)
    search_timeout: float = Field(default=DEFAULT_SEARCH_TIMEOUT, gt=0)

    @classmethod
    def for_root(cls, root: Path, **overrides) -> "MpmConfig":
        root = Path(root)
        return cls(
            root=root,
            plugins_dir=root / PLUGINS_DIRNAME,
            manifest_path=root / MANIFEST_FILENAME,
            lockfile_path=root / LOCKFILE_FILENAME,
            **overrides,
        )


class UserConfig(BaseModel):
    root: Optional[Path] = None


def _coerce_path(base: Path, value: Path | str) -> Path:
    path = value if isinstance(value, Path) else Path(value)
    path = path.expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def load_user_config() -> UserConfig:
    if not USER_CONFIG_PATH.exists():
        return UserConfig()
    try:
        data = json.loads(USER_CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:  # pragma: no cover - config errors are user-facing
        raise ConfigError(f"Invalid JSON in {USER_CONFIG_PATH}: {exc}") from exc
    return UserConfig(**data)


def save_user_config(cfg: UserConfig) -> Path:
    USER_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    USER_CONFIG_PATH.write_text(cfg.model_dump_json(indent=2))
    return USER_CONFIG_PATH


def _resolve_initial_root(root: Path | None, user_cfg: UserConfig) -> Path:
    if root is not None:
        return Path(root).expanduser().resolve()

    cwd = Path.cwd().resolve()
    if (cwd / MANIFEST_FILENAME).exists():
        return cwd

    if user_cfg.root is not None:
        return Path(user_cfg.root).expanduser().resolve()

    return cwd


def load_config(root: Path | None = None) -> MpmConfig:
    """Load configuration from env + user defaults.

    An explicit ``root`` wins over ``MPM_DIR``; ``MPM_DIR`` wins over the
    current directory and the stored user-level root.
    """

    user_cfg = load_user_config()
    cwd = Path.cwd().resolve()
    env_file = cwd / DEFAULT_ENV_FILENAME
    env_settings = EnvSettings(
        _env_file=env_file if env_file.exists() else None,
    )

    if root is None and env_settings.dir is not None:
        server_root = _coerce_path(cwd, env_settings.dir)
    else:
        server_root = _resolve_initial_root(root, user_cfg)

    if server_root.exists() and not server_root.is_dir():
        raise ConfigError(f"{server_root} is not a directory.")

    overrides = {
        "user_agent": env_settings.user_agent or DEFAULT_USER_AGENT,
        "http_timeout": env_settings.http_timeout or DEFAULT_HTTP_TIMEOUT,
        "search_timeout": env_settings.search_timeout or DEFAULT_SEARCH_TIMEOUT,
    }
    return MpmConfig.for_root(server_root, **overrides)
