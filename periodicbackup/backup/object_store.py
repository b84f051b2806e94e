"""
Thin client over an S3-compatible object store.

Every call round-trips to the backend; there is no caching and no retry.
boto3/botocore failures are wrapped in TransferError.
"""

import os
import logging
from typing import List, Optional, Union

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, BotoCoreError

from .errors import TransferError


logger = logging.getLogger(__name__)


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class ObjectStoreClient:
    """
    Key/value blob operations against an S3-compatible store.

    Credentials come from the standard boto3 chain (environment, shared
    config, instance profile).
    """

    def __init__(self, region: Optional[str] = None, endpoint_url: Optional[str] = None, client=None):
        """
        Initialize the object store client.

        Args:
            region: AWS region (default: boto3's configured region)
            endpoint_url: Custom endpoint for S3-compatible stores
            client: Pre-built boto3 S3 client (mainly for tests)
        """
        self.region = region
        self.endpoint_url = endpoint_url

        if client is not None:
            self.s3_client = client
            return

        try:
            self.s3_client = boto3.client(
                's3',
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise TransferError(f"Failed to initialize S3 client: {e}")

    def list_keys(self, bucket: str) -> List[str]:
        """
        List every key in a bucket.

        Raises:
            TransferError: If listing fails
        """
        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=bucket):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            return keys

        except ClientError as e:
            raise TransferError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 list failed: {e}")

    def put(self, bucket: str, key: str, source: Union[str, os.PathLike, bytes]):
        """
        Store a local file or raw bytes under a key.

        Args:
            bucket: Bucket name
            key: Object key
            source: Path of a local file, or the bytes to store

        Raises:
            TransferError: If the upload fails
        """
        try:
            if isinstance(source, (bytes, bytearray)):
                self.s3_client.put_object(Bucket=bucket, Key=key, Body=bytes(source))
            else:
                self.s3_client.upload_file(os.fspath(source), bucket, key)
        except ClientError as e:
            raise TransferError(f"S3 upload of {key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 upload of {key} failed: {e}")
        except S3UploadFailedError as e:
            raise TransferError(f"S3 upload of {key} failed: {e}")

    def get(self, bucket: str, key: str):
        """
        Fetch an object.

        Returns:
            Readable byte stream of the object body

        Raises:
            TransferError: If the fetch fails
        """
        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
            return response['Body']
        except ClientError as e:
            raise TransferError(f"S3 get of {key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 get of {key} failed: {e}")

    def download(self, bucket: str, key: str, dest_path: Union[str, os.PathLike]):
        """
        Stream an object into a local file.

        Raises:
            TransferError: If the fetch fails
            OSError: If the local file cannot be written
        """
        body = self.get(bucket, key)
        try:
            with open(dest_path, 'wb') as f:
                for chunk in body.iter_chunks(chunk_size=1024 * 1024):
                    f.write(chunk)
        except (ClientError, BotoCoreError) as e:
            raise TransferError(f"S3 download of {key} failed: {e}")
        finally:
            body.close()

    def delete(self, bucket: str, key: str):
        """
        Delete an object.

        Raises:
            TransferError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise TransferError(f"S3 delete of {key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 delete of {key} failed: {e}")

    def bucket_exists(self, bucket: str) -> bool:
        """
        Check that a bucket exists and is accessible.

        Returns:
            False when the bucket is missing or access is denied

        Raises:
            TransferError: On any other failure
        """
        try:
            self.s3_client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('404', '403', 'NoSuchBucket', 'AccessDenied'):
                logger.debug(f"Bucket {bucket} not accessible ({error_code})")
                return False
            raise TransferError(f"S3 bucket check failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 bucket check failed: {e}")
