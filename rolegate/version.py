"""Version and build identification reported by the CLI and the service."""

import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

_VERSION_FILE = Path(__file__).parent / "VERSION"


def get_version() -> str:
    """Installed distribution version, else the bundled VERSION file.

    A source tree that was never installed has no distribution metadata.
    """
    try:
        return version("rolegate")
    except PackageNotFoundError:
        pass
    try:
        return _VERSION_FILE.read_text().strip() or "0.0.0"
    except OSError:
        return "0.0.0"


__version__ = get_version()


def get_commit() -> str:
    """Build commit, stamped into ROLEGATE_GIT_SHA by packaging."""
    return os.getenv("ROLEGATE_GIT_SHA", "").strip() or "unknown"
