"""
.env file support.

Variables are read from ``$XDG_CONFIG_HOME/issuesync/.env`` and then
from ``.env`` and ``.env.local`` at the root of the project's git
repository, later files winning. A value from a file never replaces a
variable the process already has, so anything exported in the shell
takes precedence over every file.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

from dotenv import dotenv_values

from .loader import find_project_root, get_user_config_dir

logger = logging.getLogger(__name__)

PROJECT_ENV_FILES = (".env", ".env.local")


def env_file_paths(project_dir: Path | None = None) -> list[Path]:
    """Env files for the project containing ``project_dir``, lowest precedence first."""
    root = find_project_root(project_dir)
    return [get_user_config_dir() / ".env", *(root / name for name in PROJECT_ENV_FILES)]


def load_layered_env(
    project_dir: Path | None = None,
    paths: Iterable[Path] | None = None,
) -> set[str]:
    """
    Export variables from env files into ``os.environ``.

    Args:
        project_dir: Any directory inside the project (defaults to cwd)
        paths: Explicit env files, lowest precedence first; replaces the
            user and project files

    Returns:
        Names that were set from the files.
    """
    values: dict[str, str] = {}
    for path in paths if paths is not None else env_file_paths(project_dir):
        if not path.is_file():
            continue
        logger.debug("Reading env file %s", path)
        values.update({k: v for k, v in dotenv_values(path).items() if v is not None})

    applied = {name for name in values if name not in os.environ}
    for name in applied:
        os.environ[name] = values[name]
    return applied
