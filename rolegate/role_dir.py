"""Role directory management.

Each role owns ``<cfg_root>/<role>/``, exposed read/write to the gateway
guest through the shared mount. The directory may pre-date a provisioning
run and may hold user files (VPN configs), so rollback only ever removes
the individual files a run wrote, never the directory itself. Only a
purging teardown removes the directory.
"""

from __future__ import annotations

import filecmp
import logging
import os
import shutil
import tempfile
from pathlib import Path

from rolegate.config import settings
from rolegate.errors import FilesystemFailure, ResourceConflict, ValidationError
from rolegate.naming import ROLE_NAME_PATTERN, validate_role_name
from rolegate.schemas import RoleMeta

logger = logging.getLogger(__name__)

ROLE_META_FILENAME = "role-meta.json"


def stage_atomic(path: Path, content: str, mode: int = 0o644) -> Path:
    """Write *content* to a temp file beside *path* and return the temp path."""
    path = Path(path)
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
    except OSError as e:
        raise FilesystemFailure(path, f"Failed to stage file ({e})") from e
    return Path(tmp_name)


def stage_copy(source: Path, path: Path) -> Path:
    """Copy *source* (content and mode) to a temp file beside *path*."""
    path = Path(path)
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as e:
        raise FilesystemFailure(path, f"Failed to stage file ({e})") from e
    os.close(fd)
    try:
        shutil.copy2(source, tmp_name)
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise FilesystemFailure(path, f"Failed to copy {source} ({e})") from e
    return Path(tmp_name)


def commit_atomic(tmp_path: Path, path: Path) -> None:
    """Rename a staged temp file over its target."""
    try:
        os.replace(tmp_path, path)
    except OSError as e:
        raise FilesystemFailure(path, f"Failed to replace file ({e})") from e


def write_atomic(path: Path, content: str, mode: int = 0o644) -> Path:
    """Write a file so readers see either the old or the new content."""
    tmp_path = stage_atomic(path, content, mode)
    try:
        commit_atomic(tmp_path, Path(path))
    finally:
        tmp_path.unlink(missing_ok=True)
    return Path(path)


class RoleDirectoryManager:
    """Deterministic role -> directory mapping and file bookkeeping."""

    def __init__(self, cfg_root: Path | None = None):
        self._cfg_root = Path(cfg_root) if cfg_root is not None else None

    @property
    def cfg_root(self) -> Path:
        # Resolved lazily so settings changes (tests, CLI flags) apply
        return self._cfg_root if self._cfg_root is not None else Path(settings.cfg_root)

    def role_dir(self, role: str) -> Path:
        return self.cfg_root / validate_role_name(role)

    def ensure_role_dir(self, role: str) -> tuple[Path, bool]:
        """Create the role directory (and parents) if needed.

        Returns:
            Tuple of (path, created_now)
        """
        path = self.role_dir(role)
        existed = path.is_dir()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemFailure(path, f"Failed to create role directory ({e})") from e
        if not existed:
            logger.info(f"Created role directory {path}")
        return path, not existed

    def check_import(self, role: str, source: Path) -> Path | None:
        """Validate a pending import; return the destination if a copy is needed."""
        source = Path(source)
        if not source.is_file():
            raise ValidationError(f"File to import does not exist: {source}")
        dest = self.role_dir(role) / source.name
        if dest.exists():
            if dest.is_file() and filecmp.cmp(source, dest, shallow=False):
                return None
            raise ResourceConflict(f"{dest} already exists with different content")
        return dest

    def import_file(self, role: str, source: Path) -> Path | None:
        """Copy a host file into the role directory.

        Returns:
            The destination path if this call wrote it, None if an identical
            file was already present (and therefore is not ours to remove).
        """
        dest = self.check_import(role, source)
        if dest is None:
            logger.info(f"{Path(source).name} already present in role directory for {role}")
            return None
        # Staged beside the target so a failed copy never leaves a partial file
        tmp_path = stage_copy(source, dest)
        try:
            commit_atomic(tmp_path, dest)
        finally:
            tmp_path.unlink(missing_ok=True)
        logger.info(f"Copied {source} to {dest}")
        return dest

    def remove_files(self, paths: list[Path | str]) -> list[str]:
        """Remove the given files, leaving directories in place.

        Returns:
            Warning messages for files that could not be removed.
        """
        warnings = []
        for path in paths:
            path = Path(path)
            try:
                path.unlink()
                logger.info(f"Removed {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                warnings.append(f"Failed to remove {path}: {e}")
        return warnings

    def remove_role_dir(self, role: str) -> str | None:
        """Delete a role directory with everything in it, user files included.

        Returns:
            A warning message if the directory could not be removed.
        """
        path = self.role_dir(role)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            return f"Failed to remove {path}: {e}"
        logger.info(f"Removed role directory {path}")
        return None

    def list_roles(self) -> list[str]:
        """Discover roles that have a directory under cfg_root."""
        root = self.cfg_root
        if not root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in root.iterdir()
            if entry.is_dir() and ROLE_NAME_PATTERN.match(entry.name)
        )

    def meta_path(self, role: str) -> Path:
        return self.role_dir(role) / ROLE_META_FILENAME

    def save_meta(self, meta: RoleMeta) -> Path:
        path = self.meta_path(meta.role_name)
        return write_atomic(path, meta.model_dump_json(indent=2) + "\n")

    def load_meta(self, role: str) -> RoleMeta | None:
        path = self.meta_path(role)
        if not path.is_file():
            return None
        try:
            return RoleMeta.model_validate_json(path.read_text())
        except ValueError as e:
            logger.warning(f"Ignoring unreadable role metadata {path}: {e}")
            return None
