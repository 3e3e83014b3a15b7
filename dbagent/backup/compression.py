"""
Stream transform chain for backup artifacts.

    producer stdout ─┐
                     ├─> [tar] -> compress (zstd | gzip | none) -> [encrypt] -> {artifact}.part
    producer files ──┘

The chain writes into a staging file next to the destination and renames it
into place only when every stage (including the producer's exit status)
succeeded. On any failure the staging file is removed, so nothing ever appears
under the final name.
"""

import os
import gzip
import shutil
import logging
import tarfile
import tempfile
import subprocess
from contextlib import contextmanager, ExitStack
from typing import BinaryIO, Optional

import zstandard

from dbagent.utils.commands import build_env, redact_argv, stderr_tail
from dbagent.utils.crypto import StreamCipher, DecryptingReader
from .naming import STAGING_SUFFIX, COMPRESSION_EXTENSIONS
from .sources import StreamPayload, FileSetPayload, ProducerError
from .workspace import ScopedWorkspace


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class TransformError(Exception):
    """Raised when compression, encryption or writing the artifact fails."""
    pass


class ChainOptions:
    """Compression and encryption settings applied to a payload."""

    def __init__(self, compression: str = 'zstd', level: Optional[int] = None, passphrase: Optional[str] = None):
        if compression not in COMPRESSION_EXTENSIONS:
            raise ValueError(
                f"Invalid compression: {compression}. "
                f"Valid options: {list(COMPRESSION_EXTENSIONS.keys())}"
            )
        self.compression = compression
        self.level = level
        self.passphrase = passphrase or None

    @classmethod
    def from_config(cls, config) -> 'ChainOptions':
        return cls(
            compression=config.compress,
            level=config.compression_level,
            passphrase=config.passphrase
        )

    @property
    def encrypted(self) -> bool:
        return self.passphrase is not None

    def __repr__(self):
        return f'<ChainOptions compression={self.compression} level={self.level} encrypted={self.encrypted}>'


class _Passthrough:
    """Identity stage for COMPRESS=none; close() leaves the target open."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj

    def write(self, data) -> int:
        self._fileobj.write(data)
        return len(data)

    def flush(self):
        self._fileobj.flush()

    def close(self):
        self._fileobj.flush()


def _open_compressor(compression: str, level: Optional[int], fileobj: BinaryIO):
    """
    Wrap a writable file with the compression stage.

    The returned object's close() finishes the compressed stream without
    closing fileobj.
    """
    if compression == 'zstd':
        # threads=-1: one worker per CPU, like `zstd -T0`
        cctx = zstandard.ZstdCompressor(level=level or 3, threads=-1)
        return cctx.stream_writer(fileobj, closefd=False)
    elif compression == 'gzip':
        return gzip.GzipFile(filename='', mode='wb', compresslevel=level or 6, fileobj=fileobj)
    return _Passthrough(fileobj)


def _pump_command(payload: StreamPayload, writer, workspace: Optional[ScopedWorkspace]) -> int:
    """
    Run the payload's command and copy its stdout into writer.

    Returns:
        Number of bytes the command produced

    Raises:
        ProducerError: If the command cannot start, exits non-zero or writes nothing
    """
    logger.info(f"Streaming: {' '.join(redact_argv(payload.argv, payload.secrets))}")

    with ExitStack() as stack:
        if workspace is not None and workspace.acquired:
            stderr_file = stack.enter_context(open(workspace.stderr_log(payload.name), 'w+b'))
        else:
            stderr_file = stack.enter_context(tempfile.TemporaryFile())

        try:
            proc = subprocess.Popen(
                payload.argv,
                stdout=subprocess.PIPE,
                stderr=stderr_file,
                env=build_env(payload.env)
            )
        except FileNotFoundError:
            raise ProducerError(f"Missing required command: {payload.argv[0]}")

        produced = 0
        try:
            while True:
                chunk = proc.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                writer.write(chunk)
                produced += len(chunk)
        except BaseException:
            proc.kill()
            proc.wait()
            raise
        finally:
            proc.stdout.close()

        returncode = proc.wait()

        if returncode != 0:
            stderr_file.seek(0)
            tail = stderr_tail(stderr_file.read().decode('utf-8', 'replace'))
            message = f"{payload.name} exited with status {returncode}"
            if tail:
                message = f"{message}: {tail}"
            raise ProducerError(message)

    if produced == 0:
        raise ProducerError(f"{payload.name} produced no output")

    return produced


def _archive_members(payload: FileSetPayload, writer):
    """
    Write the payload's members as an uncompressed tar stream into writer.

    Raises:
        ProducerError: If the set is empty or a member has disappeared
    """
    if payload.is_empty:
        raise ProducerError("No files to archive")

    with tarfile.open(fileobj=writer, mode='w|', format=tarfile.PAX_FORMAT) as tar:
        for path, arcname in payload.members:
            if not os.path.lexists(path):
                raise ProducerError(f"Path does not exist: {path}")
            tar.add(path, arcname=arcname, recursive=True)


def _remove_quietly(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to remove staging file {path}: {e}")


def write_artifact(
    payload,
    destination: str,
    options: ChainOptions,
    workspace: Optional[ScopedWorkspace] = None
) -> int:
    """
    Run the transform chain and atomically publish the result at destination.

    Args:
        payload: StreamPayload or FileSetPayload
        destination: Final artifact path
        options: Compression and encryption settings
        workspace: Run workspace (used for captured stderr)

    Returns:
        Size of the finished artifact in bytes

    Raises:
        ProducerError: If the producer side failed
        TransformError: If compression, encryption or I/O failed
    """
    if not isinstance(payload, (StreamPayload, FileSetPayload)):
        raise TypeError(f"Unsupported payload: {payload!r}")

    directory = os.path.dirname(os.path.abspath(destination))
    staging = destination + STAGING_SUFFIX

    try:
        os.makedirs(directory, exist_ok=True)

        with open(staging, 'wb') as raw:
            encryptor = None
            sink = raw
            if options.encrypted:
                encryptor = StreamCipher(options.passphrase).encryptor(raw)
                sink = encryptor

            compressor = _open_compressor(options.compression, options.level, sink)

            if isinstance(payload, StreamPayload):
                _pump_command(payload, compressor, workspace)
            else:
                _archive_members(payload, compressor)

            compressor.close()
            if encryptor is not None:
                encryptor.close()

            raw.flush()
            os.fsync(raw.fileno())

        os.replace(staging, destination)

    except ProducerError:
        _remove_quietly(staging)
        raise
    except Exception as e:
        _remove_quietly(staging)
        raise TransformError(f"Failed to write artifact {os.path.basename(destination)}: {e}") from e
    except BaseException:
        _remove_quietly(staging)
        raise

    return get_artifact_size(destination)


def compression_from_path(path: str) -> str:
    """
    Guess the compression kind from an artifact file name.

    Raises:
        ValueError: If the extension is not zst, gz or bin
    """
    extension = os.path.basename(path).rsplit('.', 1)[-1]
    for kind, ext in COMPRESSION_EXTENSIONS.items():
        if ext == extension:
            return kind
    raise ValueError(f"Cannot determine compression of {path}")


@contextmanager
def open_artifact(path: str, compression: Optional[str] = None, passphrase: Optional[str] = None):
    """
    Open an artifact for reading its original (decrypted, decompressed) bytes.

    Args:
        path: Artifact path
        compression: zstd, gzip or none (guessed from the extension when None)
        passphrase: Decryption passphrase for encrypted artifacts

    Yields:
        Readable binary stream
    """
    if compression is None:
        compression = compression_from_path(path)

    with ExitStack() as stack:
        source = stack.enter_context(open(path, 'rb'))

        if passphrase:
            source = stack.enter_context(DecryptingReader(source, passphrase))

        if compression == 'zstd':
            stream = stack.enter_context(
                zstandard.ZstdDecompressor().stream_reader(source, closefd=False)
            )
        elif compression == 'gzip':
            stream = stack.enter_context(gzip.GzipFile(fileobj=source, mode='rb'))
        else:
            stream = source

        yield stream


def extract_artifact(path: str, target_dir: str, compression: Optional[str] = None, passphrase: Optional[str] = None):
    """
    Restore a tar artifact into target_dir.

    Returns:
        List of member names extracted
    """
    os.makedirs(target_dir, exist_ok=True)
    names = []

    with open_artifact(path, compression, passphrase) as stream:
        with tarfile.open(fileobj=stream, mode='r|') as tar:
            for member in tar:
                names.append(member.name)
                if hasattr(tarfile, 'data_filter'):
                    tar.extract(member, target_dir, filter='data')
                else:
                    tar.extract(member, target_dir)

    return names


def decrypt_artifact(path: str, output_path: str, passphrase: str) -> int:
    """
    Write the decrypted (still compressed) content of an artifact.

    Returns:
        Bytes written
    """
    with open(path, 'rb') as source, open(output_path, 'wb') as target:
        reader = DecryptingReader(source, passphrase)
        shutil.copyfileobj(reader, target, CHUNK_SIZE)
        return target.tell()


def get_artifact_size(artifact_path: str) -> int:
    """
    Get the size of an artifact file in bytes.

    Raises:
        TransformError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(artifact_path)
    except FileNotFoundError:
        raise TransformError(f"Artifact not found: {artifact_path}")
    except OSError as e:
        raise TransformError(f"Failed to get artifact size: {e}")
