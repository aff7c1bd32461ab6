from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .manifest import find_manifest
from .utils import home_dir

STUDIO_DIRNAME = "MisfitStudio"


class AppMode(str, Enum):
    STUDIO = "studio"
    INSTALLER = "installer"


def detect_mode(
    forced: str | None = None,
    root: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> AppMode:
    """Pick the application mode.

    A forced mode (CLI flag, ``MISFIT_MODE`` or ``MISFIT_STUDIO=1``) wins.
    Otherwise a bundled install manifest under ``root`` selects the installer.
    """
    env = os.environ if env is None else env
    raw = (forced or env.get("MISFIT_MODE") or "").strip().lower()
    if not raw and env.get("MISFIT_STUDIO", "").strip() == "1":
        raw = AppMode.STUDIO.value
    if raw:
        try:
            return AppMode(raw)
        except ValueError:
            raise ValueError(f"Invalid MISFIT_MODE: {raw}") from None

    if find_manifest(root or Path.cwd()) is not None:
        return AppMode.INSTALLER
    return AppMode.STUDIO


def default_documents_dir(env: Mapping[str, str] | None = None) -> Path:
    home = home_dir(env) or Path.home()
    return home / "Documents"


@dataclass(frozen=True)
class Settings:
    documents_dir: Path
    install_root: Path | None
    command_cwd: Path
    dist_dir: Path
    dist_fallback: Path
    http_timeout: int
    http_max_retries: int
    http_backoff: float = 0.5
    assume_yes: bool = False

    @staticmethod
    def from_sources(
        cli_documents_dir: str | None = None,
        cli_install_root: str | None = None,
        cli_command_cwd: str | None = None,
        cli_dist_dir: str | None = None,
        assume_yes: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> "Settings":
        env = os.environ if env is None else env

        documents_raw = cli_documents_dir or env.get("MISFIT_DOCUMENTS_DIR")
        documents_dir = (
            Path(documents_raw).expanduser().resolve()
            if documents_raw
            else default_documents_dir(env)
        )

        install_root_raw = cli_install_root or env.get("MISFIT_INSTALL_ROOT") or None
        install_root = Path(install_root_raw).expanduser().resolve() if install_root_raw else None

        command_cwd = Path(
            cli_command_cwd or env.get("MISFIT_COMMAND_CWD") or Path.cwd()
        ).expanduser().resolve()
        if not command_cwd.is_dir():
            raise ValueError(f"Command working directory does not exist: {command_cwd}")

        dist_dir = Path(cli_dist_dir or env.get("MISFIT_DIST_DIR") or "./dist").expanduser().resolve()
        dist_fallback = documents_dir / STUDIO_DIRNAME / "dist"

        try:
            timeout = int(env.get("HTTP_TIMEOUT") or "60")
            retries = int(env.get("HTTP_MAX_RETRIES") or "5")
            backoff = float(env.get("HTTP_BACKOFF") or "0.5")
        except ValueError as exc:
            raise ValueError(f"Invalid HTTP setting: {exc}") from exc

        if timeout <= 0:
            raise ValueError("HTTP_TIMEOUT must be > 0")
        if retries < 0:
            raise ValueError("HTTP_MAX_RETRIES must be >= 0")
        if backoff < 0:
            raise ValueError("HTTP_BACKOFF must be >= 0")

        return Settings(
            documents_dir=documents_dir,
            install_root=install_root,
            command_cwd=command_cwd,
            dist_dir=dist_dir,
            dist_fallback=dist_fallback,
            http_timeout=timeout,
            http_max_retries=retries,
            http_backoff=backoff,
            assume_yes=assume_yes,
        )
