"""
Runtime configuration for dbagent.

All settings come from the environment, are validated once at startup and
are then passed around as immutable objects. Engine adapters read their own
settings with the helpers below (see dbagent/engines/).
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, List, Tuple


class ConfigError(Exception):
    """Raised when the configuration is incomplete or invalid."""
    pass


TRUE_VALUES = ('true', '1', 'yes')
FALSE_VALUES = ('false', '0', 'no')

COMPRESSION_KINDS = ('zstd', 'gzip', 'none')


def env_str(environ: Mapping[str, str], key: str, default: str = '') -> str:
    """Return a stripped string setting, falling back to default when unset or blank."""
    value = environ.get(key)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def env_required(environ: Mapping[str, str], key: str, hint: str = '') -> str:
    """Return a required string setting or raise ConfigError."""
    value = env_str(environ, key)
    if not value:
        message = f"{key} is required"
        if hint:
            message = f"{message} ({hint})"
        raise ConfigError(message)
    return value


def env_bool(environ: Mapping[str, str], key: str, default: bool = False) -> bool:
    """
    Parse a boolean setting.

    Accepts true/false, 1/0, yes/no in any case.

    Raises:
        ConfigError: If the value is not a recognised boolean
    """
    value = env_str(environ, key)
    if not value:
        return default

    lowered = value.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False

    raise ConfigError(f"{key} must be true or false, got: {value!r}")


def env_int(
    environ: Mapping[str, str],
    key: str,
    default: int,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None
) -> int:
    """
    Parse an integer setting with optional bounds.

    Raises:
        ConfigError: If the value is not an integer or is out of range
    """
    value = env_str(environ, key)
    if not value:
        number = default
    else:
        try:
            number = int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got: {value!r}")

    if minimum is not None and number < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got: {number}")
    if maximum is not None and number > maximum:
        raise ConfigError(f"{key} must be <= {maximum}, got: {number}")

    return number


def env_choice(environ: Mapping[str, str], key: str, choices: Tuple[str, ...], default: str) -> str:
    """Parse a setting restricted to a fixed set of lowercase values."""
    value = env_str(environ, key, default).lower()
    if value not in choices:
        raise ConfigError(f"Unknown {key}={value}. Valid options: {', '.join(choices)}")
    return value


def split_csv(value: str) -> List[str]:
    """Split a comma-separated list, trimming items and dropping empty ones."""
    return [item.strip() for item in (value or '').split(',') if item.strip()]


def default_parallelism() -> int:
    """CPU count used as the default worker count for dump tools."""
    return os.cpu_count() or 2


def parse_s3_destination(value: str) -> Tuple[str, str]:
    """
    Split an S3 destination into bucket and key prefix.

    Accepts 's3://bucket/some/prefix', 's3://bucket' or 'bucket/prefix'.

    Returns:
        Tuple of (bucket, prefix) where prefix has no leading/trailing slash

    Raises:
        ConfigError: If no bucket name can be found
    """
    destination = (value or '').strip()
    if destination.lower().startswith('s3://'):
        destination = destination[5:]

    destination = destination.strip('/')
    bucket, _, prefix = destination.partition('/')

    if not bucket:
        raise ConfigError("S3_UPLOAD=true but S3_BUCKET is empty")

    return bucket, prefix.strip('/')


def history_url_from_env(environ: Mapping[str, str]) -> Optional[str]:
    """
    Resolve HISTORY_DB_URL.

    Unset means a SQLite file below OUTPUT_DIR; 'none' disables run history.
    """
    url = env_str(environ, 'HISTORY_DB_URL')
    if not url:
        output_dir = env_str(environ, 'OUTPUT_DIR', '/backups')
        return 'sqlite:///' + os.path.join(os.path.abspath(output_dir), '.dbagent', 'history.db')
    if url.lower() == 'none':
        return None
    return url


@dataclass(frozen=True)
class S3Settings:
    """Object storage destination for uploaded artifacts."""

    enabled: bool = False
    bucket: str = ''
    prefix: str = ''
    access_key: str = ''
    secret_key: str = ''
    region: str = 'us-east-1'
    endpoint_url: str = ''
    verify_ssl: bool = True
    force_path_style: bool = True

    @property
    def uri(self) -> str:
        if not self.bucket:
            return ''
        if self.prefix:
            return f"s3://{self.bucket}/{self.prefix}"
        return f"s3://{self.bucket}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> 'S3Settings':
        enabled = env_bool(environ, 'S3_UPLOAD', False)
        raw_bucket = env_str(environ, 'S3_BUCKET')

        bucket, prefix = '', ''
        if enabled:
            bucket, prefix = parse_s3_destination(raw_bucket)
        elif raw_bucket:
            # Kept so that 'verify'/'history' can show where uploads would go
            try:
                bucket, prefix = parse_s3_destination(raw_bucket)
            except ConfigError:
                bucket, prefix = '', ''

        return cls(
            enabled=enabled,
            bucket=bucket,
            prefix=prefix,
            access_key=env_str(environ, 'AWS_ACCESS_KEY_ID'),
            secret_key=env_str(environ, 'AWS_SECRET_ACCESS_KEY'),
            region=env_str(environ, 'AWS_DEFAULT_REGION', 'us-east-1'),
            endpoint_url=env_str(environ, 'S3_ENDPOINT'),
            verify_ssl=env_bool(environ, 'S3_SSL_VERIFY', True),
            force_path_style=env_bool(environ, 'AWS_S3_FORCE_PATH_STYLE', True),
        )


@dataclass(frozen=True)
class Config:
    """Pipeline configuration shared by every engine."""

    output_dir: str = '/backups'
    retention_count: int = 7

    compress: str = 'zstd'
    zstd_level: int = 6
    gzip_level: int = 6

    encrypt: bool = False
    encrypt_password: str = field(default='', repr=False)

    s3: S3Settings = field(default_factory=S3Settings)

    temp_dir: Optional[str] = None
    log_level: str = 'INFO'
    log_file: Optional[str] = None
    history_db_url: Optional[str] = None
    schedule: Optional[str] = None

    def __post_init__(self):
        if self.compress not in COMPRESSION_KINDS:
            raise ConfigError(
                f"Unknown COMPRESS={self.compress}. Valid options: {', '.join(COMPRESSION_KINDS)}"
            )
        if self.retention_count < 1:
            raise ConfigError(f"RETENTION_COUNT must be >= 1, got: {self.retention_count}")
        if self.encrypt and not self.encrypt_password:
            raise ConfigError("ENCRYPT=true but ENCRYPT_PASSWORD is empty")
        if self.s3.enabled and not self.s3.bucket:
            raise ConfigError("S3_UPLOAD=true but S3_BUCKET is empty")

    @property
    def compression_level(self) -> Optional[int]:
        if self.compress == 'zstd':
            return self.zstd_level
        if self.compress == 'gzip':
            return self.gzip_level
        return None

    @property
    def passphrase(self) -> Optional[str]:
        """Encryption passphrase when encryption is enabled, else None."""
        return self.encrypt_password if self.encrypt else None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build and validate the pipeline configuration from the environment.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Validated Config

        Raises:
            ConfigError: On any missing or invalid setting
        """
        if environ is None:
            environ = os.environ

        output_dir = env_str(environ, 'OUTPUT_DIR', '/backups')

        return cls(
            output_dir=output_dir,
            retention_count=env_int(environ, 'RETENTION_COUNT', 7),
            compress=env_choice(environ, 'COMPRESS', COMPRESSION_KINDS, 'zstd'),
            zstd_level=env_int(environ, 'ZSTD_LEVEL', 6, minimum=1, maximum=22),
            gzip_level=env_int(environ, 'GZIP_LEVEL', 6, minimum=1, maximum=9),
            encrypt=env_bool(environ, 'ENCRYPT', False),
            encrypt_password=environ.get('ENCRYPT_PASSWORD', '') or '',
            s3=S3Settings.from_env(environ),
            temp_dir=env_str(environ, 'TEMP_DIR') or None,
            log_level=env_str(environ, 'LOG_LEVEL', 'INFO').upper(),
            log_file=env_str(environ, 'LOG_FILE') or None,
            history_db_url=history_url_from_env(environ),
            schedule=env_str(environ, 'SCHEDULE') or None,
        )
