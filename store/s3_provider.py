"""
S3-compatible storage provider (Cloudflare R2, MinIO, AWS S3 ...).

Cloudflare R2 is S3-compatible and has zero egress fees, which suits a
gateway that serves the same objects over and over.
"""

import logging
from typing import Iterable, Iterator, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError

from shared.constants import AUDIO_CONTENT_TYPE, STREAM_CHUNK_SIZE, UPLOAD_PART_SIZE
from shared.errors import StorageError, UploadError
from .storage_provider import IterableReader, StorageProvider

logger = logging.getLogger(__name__)


def _is_not_found(error: ClientError) -> bool:
    response = getattr(error, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", ""))
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return status == 404 or code in ("404", "NoSuchKey", "NotFound")


class S3StorageProvider(StorageProvider):
    """
    Storage implementation using the boto3 S3 client.

    Uploads go through the managed transfer API. Streams larger than one part
    become multipart uploads, which S3 only publishes on completion and
    aborts when the source stream raises.
    """

    def __init__(self, endpoint_url: str, bucket_name: str,
                 access_key_id: Optional[str] = None,
                 secret_access_key: Optional[str] = None,
                 client=None):
        super().__init__()
        self.endpoint_url = endpoint_url
        self.bucket_name = bucket_name
        self.s3_client = client or boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name='auto'  # R2 uses 'auto' region
        )
        self._transfer_config = TransferConfig(
            multipart_threshold=UPLOAD_PART_SIZE,
            multipart_chunksize=UPLOAD_PART_SIZE,
            use_threads=False,
        )

    def exists(self, key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise StorageError(f"head_object failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"head_object failed for {key}: {e}") from e

    def read(self, key: str) -> Iterator[bytes]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"get_object failed for {key}: {e}") from e
        return self._iter_body(response['Body'])

    @staticmethod
    def _iter_body(body) -> Iterator[bytes]:
        try:
            for chunk in body.iter_chunks(chunk_size=STREAM_CHUNK_SIZE):
                if chunk:
                    yield chunk
        finally:
            body.close()

    def write(self, key: str, chunks: Iterable[bytes],
              content_type: str = AUDIO_CONTENT_TYPE) -> int:
        reader = _TrackingReader(chunks)
        try:
            self.s3_client.upload_fileobj(
                reader, self.bucket_name, key,
                ExtraArgs={'ContentType': content_type},
                Config=self._transfer_config,
            )
        except Exception as e:
            if reader.source_error is not None:
                # The stream itself failed; report the real cause
                raise reader.source_error
            raise UploadError(f"Upload of {key} failed: {e}") from e
        logger.debug(f"[Store] Uploaded {reader.bytes_read} bytes to {key}")
        return reader.bytes_read

    def issue_access_locator(self, key: str, ttl: int = 3600) -> str:
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': key},
                ExpiresIn=ttl
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"URL generation failed for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if not _is_not_found(e):
                raise StorageError(f"delete_object failed for {key}: {e}") from e

    def upload_json(self, data: str, key: str) -> None:
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data.encode('utf-8'),
                ContentType='application/json'
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"JSON upload failed for {key}: {e}") from e

    def download_json(self, key: str) -> Optional[str]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read().decode('utf-8')
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise StorageError(f"JSON download failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"JSON download failed for {key}: {e}") from e


class _TrackingReader(IterableReader):
    """IterableReader that remembers the exception raised by its source."""

    def __init__(self, chunks: Iterable[bytes]):
        super().__init__(chunks)
        self.source_error: Optional[BaseException] = None

    def readinto(self, buffer) -> int:
        try:
            return super().readinto(buffer)
        except Exception as e:
            self.source_error = e
            raise
