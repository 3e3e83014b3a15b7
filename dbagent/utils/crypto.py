"""
Streaming encryption for backup artifacts.

Produces the same format as `openssl enc -aes-256-cbc -salt -pbkdf2`:

    b'Salted__' + 8 byte salt + AES-256-CBC ciphertext (PKCS7 padded)

with key and IV derived by PBKDF2-HMAC-SHA256 (10000 iterations) from the
passphrase. An artifact can therefore be decrypted either with StreamCipher
or with `openssl enc -d -aes-256-cbc -pbkdf2 -pass pass:...`.
"""

import io
import os
from typing import BinaryIO, Tuple

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


MAGIC = b'Salted__'
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 10000  # openssl enc -pbkdf2 default
BLOCK_BITS = 128


class DecryptionError(Exception):
    """Raised when ciphertext cannot be decrypted (bad passphrase or corrupt data)."""
    pass


def derive_key_iv(passphrase: str, salt: bytes) -> Tuple[bytes, bytes]:
    """
    Derive the AES key and IV from a passphrase the way openssl does.

    Args:
        passphrase: Encryption passphrase
        salt: 8 byte salt

    Returns:
        Tuple of (32 byte key, 16 byte IV)
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(passphrase.encode())
    return material[:KEY_SIZE], material[KEY_SIZE:]


class EncryptingWriter:
    """
    Write-only file object that encrypts everything written to it.

    The header is emitted on the first write (or on close for empty input).
    close() writes the final padded block but leaves the underlying file open.
    """

    def __init__(self, fileobj: BinaryIO, passphrase: str, salt: bytes = None):
        if not passphrase:
            raise ValueError("Encryption passphrase must not be empty")

        self._fileobj = fileobj
        self._salt = salt if salt is not None else os.urandom(SALT_SIZE)
        key, iv = derive_key_iv(passphrase, self._salt)
        self._encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        self._padder = padding.PKCS7(BLOCK_BITS).padder()
        self._header_written = False
        self.closed = False

    def _write_header(self):
        if not self._header_written:
            self._fileobj.write(MAGIC + self._salt)
            self._header_written = True

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        if self.closed:
            raise ValueError("write to closed EncryptingWriter")

        data = bytes(data)
        self._write_header()
        padded = self._padder.update(data)
        if padded:
            self._fileobj.write(self._encryptor.update(padded))
        return len(data)

    def flush(self):
        self._fileobj.flush()

    def close(self):
        if self.closed:
            return
        self._write_header()
        tail = self._padder.finalize()
        self._fileobj.write(self._encryptor.update(tail) + self._encryptor.finalize())
        self._fileobj.flush()
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class DecryptingReader:
    """Read-only file object that decrypts an openssl-compatible stream."""

    def __init__(self, fileobj: BinaryIO, passphrase: str, chunk_size: int = 1024 * 1024):
        if not passphrase:
            raise ValueError("Decryption passphrase must not be empty")

        header = fileobj.read(len(MAGIC) + SALT_SIZE)
        if len(header) < len(MAGIC) + SALT_SIZE or not header.startswith(MAGIC):
            raise DecryptionError("Input is not an encrypted artifact (missing Salted__ header)")

        key, iv = derive_key_iv(passphrase, header[len(MAGIC):])
        self._fileobj = fileobj
        self._decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        self._unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._eof = False
        self.closed = False

    def readable(self) -> bool:
        return True

    def _fill(self):
        chunk = self._fileobj.read(self._chunk_size)
        if chunk:
            self._buffer += self._unpadder.update(self._decryptor.update(chunk))
            return

        try:
            tail = self._decryptor.finalize()
            self._buffer += self._unpadder.update(tail) + self._unpadder.finalize()
        except ValueError as e:
            raise DecryptionError(f"Decryption failed (wrong passphrase or corrupt data): {e}")
        self._eof = True

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            while not self._eof:
                self._fill()
            data = bytes(self._buffer)
            self._buffer.clear()
            return data

        while len(self._buffer) < size and not self._eof:
            self._fill()

        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class StreamCipher:
    """Passphrase-based encryption of artifact streams."""

    def __init__(self, passphrase: str):
        if not passphrase:
            raise ValueError("Encryption passphrase must not be empty")
        self._passphrase = passphrase

    def encryptor(self, fileobj: BinaryIO, salt: bytes = None) -> EncryptingWriter:
        """Wrap a writable binary file so that writes are encrypted."""
        return EncryptingWriter(fileobj, self._passphrase, salt=salt)

    def decryptor(self, fileobj: BinaryIO) -> DecryptingReader:
        """Wrap a readable binary file so that reads are decrypted."""
        return DecryptingReader(fileobj, self._passphrase)

    def encrypt(self, plaintext: bytes, salt: bytes = None) -> bytes:
        """
        Encrypt a small byte string in one call.

        Args:
            plaintext: Data to encrypt
            salt: Optional fixed salt (random when omitted)

        Returns:
            openssl-compatible ciphertext
        """
        buffer = io.BytesIO()
        with self.encryptor(buffer, salt=salt) as writer:
            writer.write(plaintext)
        return buffer.getvalue()

    def decrypt(self, ciphertext: bytes) -> bytes:
        """
        Decrypt a small byte string in one call.

        Raises:
            DecryptionError: If the passphrase is wrong or the data is corrupt
        """
        return self.decryptor(io.BytesIO(ciphertext)).read()
