"""
Count-based retention for local artifacts.

Keeps the newest RETENTION_COUNT artifacts matching a pattern in one
directory and deletes the rest together with their .sha256 sidecars.
Pruning runs after the current artifact is finalized, so the artifact just
written is always among the newest.
"""

import os
import glob
import logging
from typing import List, Tuple

from .naming import SIDECAR_SUFFIX, is_artifact_file


logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when the retention set cannot be listed."""
    pass


class RetentionPruner:
    """
    Deletes all but the N most recently modified artifacts of a retention set.
    """

    def __init__(self, retention_count: int):
        """
        Args:
            retention_count: Number of artifacts to keep (at least 1)
        """
        if retention_count < 1:
            raise ValueError(f"retention_count must be >= 1, got: {retention_count}")
        self.retention_count = retention_count

    def list_artifacts(self, directory: str, pattern: str) -> List[str]:
        """
        List the retention set, newest first.

        Sidecars and staging files are never part of the set. Ties in
        modification time are broken by name, newest timestamp first.

        Returns:
            Artifact paths ordered by modification time descending

        Raises:
            RetentionError: If the directory cannot be read
        """
        if not os.path.isdir(directory):
            return []

        try:
            entries = []
            for path in glob.glob(os.path.join(glob.escape(directory), pattern)):
                name = os.path.basename(path)
                if not is_artifact_file(name) or not os.path.isfile(path):
                    continue
                entries.append((os.stat(path).st_mtime, name, path))
        except OSError as e:
            raise RetentionError(f"Failed to list {directory}: {e}")

        entries.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
        return [path for _, _, path in entries]

    def select(self, directory: str, pattern: str) -> Tuple[List[str], List[str]]:
        """
        Split the retention set into what stays and what goes.

        Returns:
            Tuple of (keep, delete) path lists
        """
        artifacts = self.list_artifacts(directory, pattern)
        return artifacts[:self.retention_count], artifacts[self.retention_count:]

    def prune(self, directory: str, pattern: str) -> List[str]:
        """
        Delete artifacts beyond the retention count.

        A missing directory is not an error. A file that cannot be removed is
        logged and skipped.

        Args:
            directory: Directory holding the retention set
            pattern: Glob pattern, e.g. 'db_*.dump.tar.*'

        Returns:
            Paths of the artifacts that were deleted
        """
        keep, delete = self.select(directory, pattern)
        deleted = []

        for path in delete:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to delete old artifact {path}: {e}")
                continue

            sidecar = path + SIDECAR_SUFFIX
            try:
                os.remove(sidecar)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to delete sidecar {sidecar}: {e}")

            deleted.append(path)
            logger.info(f"Deleted old artifact: {os.path.basename(path)}")

        if deleted:
            logger.info(
                f"Retention: kept {len(keep)}, deleted {len(deleted)} in {directory} ({pattern})"
            )

        return deleted
