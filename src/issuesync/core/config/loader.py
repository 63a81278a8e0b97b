"""
Configuration loading with multi-layer merging.

Layers, lowest to highest precedence:
    model defaults < user config < project config < ISSUESYNC_* env vars

The project config lives at the root of the git working tree, so a
command run from a subdirectory sees the same settings as one run at
the top.
"""

import json
import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

from .models import IssueSyncConfig

logger = logging.getLogger(__name__)

PROJECT_CONFIG = ".issuesync/config.json"

# Settings by section, as read from one layer
Layer = dict[str, dict[str, Any]]

# Loaded configs by project root
_config_cache: dict[Path, IssueSyncConfig] = {}


def find_project_root(start: Path | None = None) -> Path:
    """
    Top of the git working tree containing ``start``.

    Outside a repository (or in a bare one) ``start`` itself is the root.
    """
    start = (start or Path.cwd()).resolve()
    try:
        repo = Repo(start, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return start
    with repo:
        if repo.working_tree_dir is None:
            return start
        return Path(repo.working_tree_dir).resolve()


def get_user_config_dir() -> Path:
    """``$XDG_CONFIG_HOME/issuesync``, ``~/.config/issuesync`` by default."""
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "issuesync"


def get_user_config_path() -> Path:
    return get_user_config_dir() / "config.json"


def get_project_config_path(project_dir: Path | None = None) -> Path:
    """Path to ``.issuesync/config.json`` at the root of the project's repository."""
    return find_project_root(project_dir) / PROJECT_CONFIG


def read_layer(path: Path) -> Layer:
    """
    Settings from one config file.

    A missing file is an empty layer. A file that cannot be parsed, or
    whose top level is not an object of sections, is logged and skipped
    so a typo in the user config never blocks a sync.
    """
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logger.warning("Ignoring config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: top level is not an object", path)
        return {}

    layer: Layer = {}
    for section, values in data.items():
        if isinstance(values, dict):
            layer[section] = values
        else:
            logger.warning("Ignoring %r in %s: expected an object of settings", section, path)
    return layer


def _at_least_one(text: str) -> int:
    value = int(text)
    if value < 1:
        raise ValueError("must be >= 1")
    return value


def _positive(text: str) -> float:
    value = float(text)
    if not value > 0:
        raise ValueError("must be > 0")
    return value


# Variable -> (section, setting, parser)
ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "ISSUESYNC_BRANCH": ("sync", "branch", str),
    "ISSUESYNC_REMOTE": ("sync", "remote", str),
    "ISSUESYNC_MAX_PUBLISH_ATTEMPTS": ("sync", "max_publish_attempts", _at_least_one),
    "ISSUESYNC_NETWORK_TIMEOUT": ("sync", "network_timeout", _positive),
}


def env_layer() -> Layer:
    """Settings from ISSUESYNC_* variables; malformed values are logged and skipped."""
    layer: Layer = {}
    for name, (section, key, parse) in ENV_OVERRIDES.items():
        text = os.environ.get(name)
        if not text:
            continue
        try:
            value = parse(text)
        except ValueError as e:
            logger.warning("Ignoring %s=%r: %s", name, text, e)
            continue
        layer.setdefault(section, {})[key] = value
    return layer


def merge_layers(*layers: Layer) -> Layer:
    """Combine layers setting by setting; later layers win."""
    merged: Layer = {}
    for layer in layers:
        for section, values in layer.items():
            merged[section] = {**merged.get(section, {}), **values}
    return merged


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> IssueSyncConfig:
    """
    Load configuration for the project containing ``project_dir``.

    Configuration precedence (highest to lowest):
        1. Environment variables (ISSUESYNC_*)
        2. Project config (.issuesync/config.json at the repository root)
        3. User config (~/.config/issuesync/config.json)
        4. Model defaults

    Args:
        project_dir: Any directory inside the project (defaults to cwd)
        use_cache: If True, return the config loaded earlier for this project

    Raises:
        ValidationError: If the merged config fails Pydantic validation

    Example:
        >>> config = load_config()
        >>> config.sync.branch
        'issuesync-sync'
    """
    root = find_project_root(project_dir)
    if use_cache and root in _config_cache:
        return _config_cache[root]

    merged = merge_layers(
        read_layer(get_user_config_path()),
        read_layer(root / PROJECT_CONFIG),
        env_layer(),
    )
    config = IssueSyncConfig.model_validate(merged)
    _config_cache[root] = config
    return config


def write_project_config(project_dir: Path, config: IssueSyncConfig) -> Path:
    """
    Write the settings every clone must share to the project config.

    Only the sync branch, remote and display settings are written;
    transport tuning stays per user.

    Returns:
        Path to the written file
    """
    path = get_project_config_path(project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", include={"sync": {"branch", "remote"}, "display": True})
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path


def clear_cache() -> None:
    """Forget loaded configs, e.g. after config files change."""
    _config_cache.clear()
