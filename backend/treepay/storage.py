import asyncio
import logging
import os
from pathlib import Path

import boto3

from .config import Settings

logger = logging.getLogger("storage")


class S3Storage:
    def __init__(self, bucket: str, region: str, client=None):
        self.bucket = bucket
        self.region = region
        self.s3 = client or boto3.client("s3", region_name=region)

    def url_for(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def write(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        await asyncio.to_thread(
            self.s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        logger.info("Uploaded %s to s3://%s", key, self.bucket)
        return self.url_for(key)

    async def read(self, key: str) -> bytes:
        response = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=key)
        return response["Body"].read()


class LocalStorage:
    """Filesystem store for deployments without a bucket."""

    def __init__(self, root: str):
        self.root = Path(root)

    def url_for(self, key: str) -> str:
        return f"/files/{key}"

    async def write(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info("Stored %s under %s", key, os.fspath(self.root))
        return self.url_for(key)

    async def read(self, key: str) -> bytes:
        return await asyncio.to_thread((self.root / key).read_bytes)


def build_storage(settings: Settings):
    if settings.aws_s3_bucket_name:
        return S3Storage(settings.aws_s3_bucket_name, settings.aws_region)
    logger.warning("AWS_S3_BUCKET_NAME not set - contracts are stored locally in %s", settings.contracts_local_dir)
    return LocalStorage(settings.contracts_local_dir)
