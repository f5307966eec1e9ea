"""AWS S3 implementation of the storage interfaces."""
import logging
import threading
from typing import BinaryIO, List, Optional

from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, WaiterError

from .config import MB, AWSStorageProperties
from .errors import DeleteTimeoutError, ObjectNotFoundError
from .interfaces import (
    DEFAULT_CONTENT_TYPE,
    Storage,
    StorageInstance,
    TransferAdapter,
    UploadSession,
)
from .plan import BlockRange

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ('404', 'NoSuchBucket', 'NoSuchKey', 'NotFound')

# Multipart limits: every part but the last is at least 5MB, at most 10000 parts
MIN_PART_SIZE = 5 * MB
MAX_PARTS = 10000


def is_not_found(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') in NOT_FOUND_CODES


class S3MultipartSession(UploadSession):
    """Multipart upload; part numbers are block index + 1."""

    def __init__(self, s3, bucket: str, key: str, upload_id: str, num_blocks: int):
        self.s3 = s3
        self.bucket = bucket
        self.key = key
        self.upload_id = upload_id
        self._etags: List[Optional[str]] = [None] * num_blocks

    def stage(self, block: BlockRange, data: bytes) -> None:
        response = self.s3.upload_part(
            Bucket=self.bucket,
            Key=self.key,
            PartNumber=block.index + 1,
            UploadId=self.upload_id,
            Body=data,
        )
        self._etags[block.index] = response['ETag']

    def commit(self) -> None:
        parts = [
            {'PartNumber': i + 1, 'ETag': etag}
            for i, etag in enumerate(self._etags)
        ]
        logger.debug(f"Completing multipart upload of '{self.key}' with {len(parts)} parts")
        self.s3.complete_multipart_upload(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
            MultipartUpload={'Parts': parts},
        )

    def abort(self) -> None:
        logger.info(f"Aborting multipart upload of '{self.key}' in bucket '{self.bucket}'")
        self.s3.abort_multipart_upload(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
        )


class S3TransferAdapter(TransferAdapter):
    """Ranged GETs and multipart uploads against one bucket."""

    def __init__(self, s3, bucket: str):
        self.s3 = s3
        self.bucket = bucket

    def object_size(self, name: str) -> int:
        try:
            return self.s3.head_object(Bucket=self.bucket, Key=name)['ContentLength']
        except ClientError as e:
            if is_not_found(e):
                raise ObjectNotFoundError(name, self.bucket) from e
            raise

    def read_range(self, name: str, offset: int, length: int) -> bytes:
        response = self.s3.get_object(
            Bucket=self.bucket,
            Key=name,
            Range=f"bytes={offset}-{offset + length - 1}",
        )
        return response['Body'].read()

    def begin_upload(self, name: str, content_type: str, blocks: List[BlockRange]) -> UploadSession:
        upload_id = self.s3.create_multipart_upload(
            Bucket=self.bucket,
            Key=name,
            ContentType=content_type,
        )['UploadId']
        return S3MultipartSession(self.s3, self.bucket, name, upload_id, len(blocks))

    def block_size_for(self, size: int, block_size: int) -> int:
        """Grow the block size so the upload fits the multipart limits."""
        return max(MIN_PART_SIZE, block_size, -(-size // MAX_PARTS))


class AWSStorageInstance(StorageInstance):
    """An S3 bucket."""

    def __init__(self, s3, name: str, props: AWSStorageProperties, **kwargs):
        super().__init__(name, props, **kwargs)
        self.s3 = s3

    def _transfer_config(self) -> TransferConfig:
        return TransferConfig(
            multipart_chunksize=self.props.block_size,
            max_concurrency=self.props.concurrency,
        )

    def transfer_adapter(self) -> TransferAdapter:
        return S3TransferAdapter(self.s3, self.name)

    def _wait_until_deleted(self, waiter_name: str, resource: str, **params):
        """Wait with a boto3 waiter bounded by the delete timeout."""
        delay = self.poll_interval
        max_attempts = int(self.delete_timeout // delay) + 1 if delay > 0 else 1
        try:
            self.s3.get_waiter(waiter_name).wait(
                WaiterConfig={'Delay': delay, 'MaxAttempts': max_attempts},
                **params,
            )
        except WaiterError as e:
            logger.error(f"Timed out waiting for {resource} to be deleted: {e}")
            raise DeleteTimeoutError(resource, self.delete_timeout) from e

    def delete(self) -> None:
        logger.info(f"Deleting bucket '{self.name}'.")
        self.s3.delete_bucket(Bucket=self.name)
        self._wait_until_deleted('bucket_not_exists', f"bucket '{self.name}'", Bucket=self.name)

    def list_objects(self, prefix: str = "") -> List[str]:
        paginator = self.s3.get_paginator('list_objects_v2')
        objects = []
        for page in paginator.paginate(Bucket=self.name, Prefix=prefix):
            contents = page.get('Contents', [])
            logger.debug(f"Retrieved {len(contents)} objects in bucket '{self.name}' "
                         f"filtered by path '{prefix}'")
            objects.extend(item['Key'] for item in contents)
        return objects

    def delete_object(self, name: str) -> None:
        response = self.s3.list_object_versions(Bucket=self.name, Prefix=name)
        versions = [v for v in response.get('Versions', []) if v['Key'] == name]
        if versions:
            logger.info(f"Deleting {len(versions)} versions of object '{name}' in bucket '{self.name}'.")
            self.s3.delete_objects(
                Bucket=self.name,
                Delete={
                    'Objects': [{'Key': v['Key'], 'VersionId': v['VersionId']} for v in versions],
                    'Quiet': True,
                },
            )
        else:
            logger.info(f"Deleting object '{name}' in bucket '{self.name}'.")
            self.s3.delete_object(Bucket=self.name, Key=name)

        self._wait_until_deleted(
            'object_not_exists',
            f"object '{name}' in bucket '{self.name}'",
            Bucket=self.name,
            Key=name,
        )

    def upload(self, name: str, content_type: Optional[str], data: BinaryIO, size: int) -> None:
        logger.info(f"Uploading object with name '{name}' of size {size} to bucket '{self.name}'.")
        self.s3.upload_fileobj(
            data,
            self.name,
            name,
            ExtraArgs={'ContentType': content_type or DEFAULT_CONTENT_TYPE},
            Config=self._transfer_config(),
        )

    def download(self, name: str, data: BinaryIO) -> None:
        logger.info(f"Downloading object with name '{name}' from bucket '{self.name}'.")
        self.s3.download_fileobj(self.name, name, data, Config=self._transfer_config())


class AWSStorage(Storage):
    """S3 buckets of one account and region."""

    def __init__(self, s3, region: Optional[str] = None,
                 props: Optional[AWSStorageProperties] = None, **kwargs):
        super().__init__(**kwargs)
        self.s3 = s3
        self.props = props or AWSStorageProperties()
        if region:
            self.props = self.props.with_changes(region=region)
        self._lock = threading.Lock()

    def _instance(self, name: str) -> AWSStorageInstance:
        return AWSStorageInstance(
            self.s3, name, self.props,
            delete_timeout=self.delete_timeout,
            poll_interval=self.poll_interval,
        )

    def _create_bucket(self, name: str):
        region = self.props.region
        logger.info(f"Creating bucket '{name}' at location '{region}' with private access.")

        kwargs = {'Bucket': name, 'ACL': 'private'}
        # location is only accepted outside us-east-1
        if region and region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': region}
        self.s3.create_bucket(**kwargs)
        self.s3.get_waiter('bucket_exists').wait(Bucket=name)
        self.s3.put_public_access_block(
            Bucket=name,
            PublicAccessBlockConfiguration={
                'BlockPublicAcls': True,
                'IgnorePublicAcls': True,
                'BlockPublicPolicy': True,
                'RestrictPublicBuckets': True,
            },
        )

    def new_instance(self, name: str) -> AWSStorageInstance:
        with self._lock:
            try:
                self.s3.head_bucket(Bucket=name)
                logger.debug(f"Found existing bucket '{name}'")
            except ClientError as e:
                if not is_not_found(e):
                    logger.error(f"Error looking up S3 bucket '{name}': {e}")
                    raise
                self._create_bucket(name)
        return self._instance(name)

    def list_instances(self) -> List[AWSStorageInstance]:
        response = self.s3.list_buckets()
        return [self._instance(b['Name']) for b in response.get('Buckets', [])]
