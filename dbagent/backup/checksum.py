"""
SHA-256 sidecar files.

For every finished artifact `X` a sidecar `X.sha256` is written containing

    <hex digest>  <artifact base name>

which is the format `sha256sum -c` understands when run from the artifact's
directory.
"""

import os
import hashlib
from typing import Tuple

from .naming import SIDECAR_SUFFIX, STAGING_SUFFIX


READ_CHUNK = 1024 * 1024


class ChecksumError(Exception):
    """Raised when a sidecar cannot be written, read or parsed."""
    pass


def sidecar_path_for(artifact_path: str) -> str:
    return artifact_path + SIDECAR_SUFFIX


def compute_sha256(path: str) -> str:
    """
    Hash a file in chunks.

    Raises:
        ChecksumError: If the file cannot be read
    """
    digest = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            while True:
                chunk = f.read(READ_CHUNK)
                if not chunk:
                    break
                digest.update(chunk)
    except OSError as e:
        raise ChecksumError(f"Failed to read {path}: {e}")
    return digest.hexdigest()


def write_sidecar(artifact_path: str) -> str:
    """
    Compute the artifact's hash and write its sidecar.

    Only call this once the artifact is final. The sidecar itself is written
    through a temporary name and renamed, like the artifact.

    Returns:
        Path of the sidecar file
    """
    if not os.path.isfile(artifact_path):
        raise ChecksumError(f"Artifact not found: {artifact_path}")

    digest = compute_sha256(artifact_path)
    sidecar = sidecar_path_for(artifact_path)
    staging = sidecar + STAGING_SUFFIX

    try:
        with open(staging, 'w', encoding='utf-8') as f:
            f.write(f"{digest}  {os.path.basename(artifact_path)}\n")
        os.replace(staging, sidecar)
    except OSError as e:
        if os.path.exists(staging):
            os.remove(staging)
        raise ChecksumError(f"Failed to write checksum sidecar {sidecar}: {e}")

    return sidecar


def read_sidecar(sidecar_path: str) -> Tuple[str, str]:
    """
    Parse a sidecar file.

    Accepts both the text ('  ') and binary (' *') sha256sum separators.

    Returns:
        Tuple of (hex digest, file name)

    Raises:
        ChecksumError: If the sidecar is missing or malformed
    """
    try:
        with open(sidecar_path, 'r', encoding='utf-8') as f:
            line = f.readline().strip()
    except FileNotFoundError:
        raise ChecksumError(f"Checksum sidecar not found: {sidecar_path}")
    except OSError as e:
        raise ChecksumError(f"Failed to read {sidecar_path}: {e}")

    parts = line.split(None, 1)
    if len(parts) != 2:
        raise ChecksumError(f"Malformed checksum sidecar: {sidecar_path}")

    digest, filename = parts[0].lower(), parts[1].lstrip('*').strip()
    if len(digest) != 64 or any(c not in '0123456789abcdef' for c in digest):
        raise ChecksumError(f"Malformed digest in {sidecar_path}")

    return digest, os.path.basename(filename)


def verify_artifact(artifact_path: str) -> bool:
    """
    Check an artifact against its sidecar.

    Returns:
        True if the recomputed hash matches and the sidecar names this file

    Raises:
        ChecksumError: If the sidecar is missing or malformed
    """
    expected, filename = read_sidecar(sidecar_path_for(artifact_path))
    if filename != os.path.basename(artifact_path):
        return False
    return compute_sha256(artifact_path) == expected
