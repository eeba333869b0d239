import asyncio
from typing import Any

import boto3
from loguru import logger

from eva_toolkit.object_store.base import (
    SIGNED_URL_EXPIRY_SECONDS,
    ObjectStore,
    conversation_prefix,
    object_key,
)
from eva_toolkit.utils.database import chunked

MAX_DELETE_OBJECTS = 1000


class S3ObjectStore(ObjectStore):
    def __init__(self, bucket: str, region_name: str | None = None, client: Any | None = None) -> None:
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=region_name)

    async def upload(self, conversation_id: str, name: str, data: bytes, content_type: str) -> str:
        key = object_key(conversation_id, name)
        await asyncio.to_thread(
            self.client.put_object, Bucket=self.bucket, Key=key, Body=data, ContentType=content_type
        )
        logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
        return key

    async def get_signed_url(self, key: str, expires_in: int = SIGNED_URL_EXPIRY_SECONDS) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def _list_keys(self, prefix: str) -> list[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        keys: list[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys += [obj["Key"] for obj in page.get("Contents", [])]
        return keys

    async def delete_prefix(self, conversation_id: str) -> int:
        keys = await asyncio.to_thread(self._list_keys, conversation_prefix(conversation_id))
        deleted = 0
        for batch in chunked(keys, MAX_DELETE_OBJECTS):
            response = await asyncio.to_thread(
                self.client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
            errors = response.get("Errors", [])
            for error in errors:
                logger.warning(f"Could not delete s3://{self.bucket}/{error.get('Key')}: {error.get('Message')}")
            deleted += len(batch) - len(errors)
        return deleted
