"""
Artifact naming.

Layout:
    {output_dir}/{mode}/{scope}/{scope}_{YYYY-MM-DDTHH-MM-SSZ}.{domain_ext}.{compression_ext}

Timestamps are UTC with second resolution, so lexical order of file names is
chronological order. Two runs for the same scope within the same second get
the same name; the later one replaces the earlier.
"""

import os
import re
from datetime import datetime, timezone
from typing import Optional


TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%SZ'
TIMESTAMP_PATTERN = re.compile(r'_(\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}Z)\.')

SIDECAR_SUFFIX = '.sha256'
STAGING_SUFFIX = '.part'

COMPRESSION_EXTENSIONS = {
    'zstd': 'zst',
    'gzip': 'gz',
    'none': 'bin'
}

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_\-]')


class ArtifactName:
    """Resolved destination of one artifact."""

    def __init__(self, output_dir: str, mode: str, scope: str, timestamp: str, filename: str, extension: str):
        self.output_dir = output_dir
        self.mode = mode
        self.scope = scope
        self.timestamp = timestamp
        self.filename = filename
        self.extension = extension

    @property
    def directory(self) -> str:
        return os.path.join(self.output_dir, self.mode, self.scope)

    @property
    def path(self) -> str:
        return os.path.join(self.directory, self.filename)

    @property
    def sidecar_path(self) -> str:
        return self.path + SIDECAR_SUFFIX

    @property
    def staging_path(self) -> str:
        return self.path + STAGING_SUFFIX

    @property
    def retention_pattern(self) -> str:
        """Glob matching every artifact of this scope and mode."""
        return f"{self.scope}_*.{self.extension}.*"

    def __repr__(self):
        return f'<ArtifactName {self.path}>'


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """
    Format a timestamp for artifact names.

    Args:
        now: Moment to format (defaults to the current time); naive values are taken as UTC

    Returns:
        Timestamp like 2024-01-05T03-00-00Z
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    return now.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_artifact_timestamp(filename: str) -> Optional[datetime]:
    """
    Extract the creation timestamp from an artifact file name.

    Returns:
        Aware UTC datetime, or None if the name carries no timestamp
    """
    match = TIMESTAMP_PATTERN.search(os.path.basename(filename))
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def sanitize_scope(raw: str) -> str:
    """
    Make a scope identifier safe for file names.

    Every character outside [A-Za-z0-9_-] (':', '.', ',', '/', spaces, ...)
    becomes '_'.

    Raises:
        ValueError: If nothing usable remains
    """
    safe = _UNSAFE_CHARS.sub('_', (raw or '').strip())
    if not safe.strip('_'):
        raise ValueError(f"Invalid scope name: {raw!r}")
    return safe


def compression_extension(compression: str) -> str:
    """
    Map a compression kind to its file extension.

    Raises:
        ValueError: If compression is not zstd, gzip or none
    """
    try:
        return COMPRESSION_EXTENSIONS[compression]
    except KeyError:
        raise ValueError(
            f"Invalid compression: {compression}. "
            f"Valid options: {list(COMPRESSION_EXTENSIONS.keys())}"
        )


def build_artifact_path(
    output_dir: str,
    mode: str,
    scope: str,
    domain_extension: str,
    compression: str,
    timestamp: Optional[str] = None
) -> ArtifactName:
    """
    Resolve where an artifact for this run goes.

    Args:
        output_dir: Root directory for artifacts
        mode: Backup mode label (dump, basebackup, snapshot, ...)
        scope: Unsanitized scope (database, keyspace set, host:port, ...)
        domain_extension: Tool specific extension, e.g. 'dump.tar'
        compression: zstd, gzip or none
        timestamp: Pre-computed timestamp (defaults to now)

    Returns:
        ArtifactName
    """
    safe_scope = sanitize_scope(scope)
    safe_mode = sanitize_scope(mode)
    stamp = timestamp or utc_timestamp()
    ext = compression_extension(compression)

    filename = f"{safe_scope}_{stamp}.{domain_extension}.{ext}"

    return ArtifactName(
        output_dir=output_dir.rstrip('/') or '/',
        mode=safe_mode,
        scope=safe_scope,
        timestamp=stamp,
        filename=filename,
        extension=domain_extension
    )


def is_artifact_file(filename: str) -> bool:
    """False for checksum sidecars and in-progress staging files."""
    return not (filename.endswith(SIDECAR_SUFFIX) or filename.endswith(STAGING_SUFFIX))
