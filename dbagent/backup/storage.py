"""
Remote publishing of finished artifacts.

Supports:
- S3Publisher: Upload to AWS S3 or any S3-compatible store (MinIO, Ceph, ...)
- NullPublisher: Upload disabled; every call is a no-op

Objects are stored as {prefix}/{artifact file name}, the same flat layout
`aws s3 cp file s3://bucket/prefix/` produces.
"""

import os
import logging
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from dbagent.config import S3Settings, ConfigError


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class PublishError(Exception):
    """Raised when an upload or other object store operation fails."""
    pass


class NullPublisher:
    """Publisher used when S3_UPLOAD is disabled."""

    enabled = False

    def upload(self, local_path: str) -> Optional[str]:
        return None

    def describe(self) -> str:
        return 'disabled'


class S3Publisher:
    """
    Uploads artifacts and sidecars to an S3 bucket.

    Credentials fall back to boto3's default chain (environment, shared
    config, instance profile) when no explicit keys are given.
    """

    enabled = True

    def __init__(
        self,
        bucket_name: str,
        prefix: str = '',
        access_key: str = '',
        secret_key: str = '',
        region: str = 'us-east-1',
        endpoint_url: str = '',
        verify_ssl: bool = True,
        force_path_style: bool = True
    ):
        """
        Initialize S3 publisher.

        Args:
            bucket_name: Destination bucket
            prefix: Key prefix (no leading/trailing slash needed)
            access_key: AWS access key ID (optional)
            secret_key: AWS secret access key (optional)
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint, e.g. http://minio:9000
            verify_ssl: Verify TLS certificates of the endpoint
            force_path_style: Use path-style addressing (needed by most S3 clones)
        """
        if not bucket_name:
            raise ConfigError("S3_UPLOAD=true but S3_BUCKET is empty")

        self.bucket_name = bucket_name
        self.prefix = (prefix or '').strip('/')
        self.region = region
        self.endpoint_url = endpoint_url or None

        client_kwargs = {
            'region_name': region,
            'config': BotoConfig(
                retries={'max_attempts': 5, 'mode': 'standard'},
                s3={'addressing_style': 'path' if force_path_style else 'auto'}
            ),
            'verify': verify_ssl,
        }
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise PublishError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_settings(cls, settings: S3Settings) -> 'S3Publisher':
        return cls(
            bucket_name=settings.bucket,
            prefix=settings.prefix,
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            region=settings.region,
            endpoint_url=settings.endpoint_url,
            verify_ssl=settings.verify_ssl,
            force_path_style=settings.force_path_style
        )

    def key_for(self, local_path: str) -> str:
        filename = os.path.basename(local_path)
        if self.prefix:
            return f"{self.prefix}/{filename}"
        return filename

    def describe(self) -> str:
        target = f"s3://{self.bucket_name}/{self.prefix}".rstrip('/')
        if self.endpoint_url:
            return f"{target} (endpoint {self.endpoint_url})"
        return target

    def upload(self, local_path: str) -> str:
        """
        Upload a file.

        Args:
            local_path: Artifact or sidecar path

        Returns:
            S3 key of uploaded file

        Raises:
            PublishError: If upload fails
        """
        if not os.path.exists(local_path):
            raise PublishError(f"Local file not found: {local_path}")

        s3_key = self.key_for(local_path)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{s3_key}")
            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise PublishError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise PublishError(f"S3 upload failed: {e}")
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(f"Failed to upload to S3: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """Upload file using a single put_object."""
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """Upload a large file in 10MB parts; the upload is aborted on any error."""
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            PublishError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise PublishError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code in ('403', 'AccessDenied'):
                raise PublishError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise PublishError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise PublishError(f"Failed to connect to S3: {e}")


def build_publisher(settings: S3Settings):
    """
    Create the publisher for the configured destination.

    Returns:
        S3Publisher when uploads are enabled, otherwise NullPublisher

    Raises:
        ConfigError: If uploads are enabled without a bucket
    """
    if not settings.enabled:
        return NullPublisher()
    if not settings.bucket:
        raise ConfigError("S3_UPLOAD=true but S3_BUCKET is empty")
    return S3Publisher.from_settings(settings)
