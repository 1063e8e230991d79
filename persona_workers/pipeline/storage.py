"""
R2 blob storage and image download helpers for the pipeline.

Generated artifacts are stored under:
  {bucket}/{owner_id}/{job_id}/output[_vN].{ext}
"""

import asyncio
import logging
import os
from typing import Optional

import boto3
import httpx
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import PermanentServiceError, TransientServiceError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

DOWNLOAD_TIMEOUT = 30


async def download_image_bytes(url: str) -> bytes:
    """Download an image from a public URL and return raw bytes."""
    try:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
            resp = await client.get(url)
    except httpx.TransportError as e:
        raise TransientServiceError(f"Download failed for {url[:80]}: {e}") from e
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientServiceError(f"Download returned {resp.status_code} for {url[:80]}")
    if resp.status_code != 200:
        raise PermanentServiceError(f"Download returned {resp.status_code} for {url[:80]}")
    return resp.content


class R2Storage:
    """
    Thin async wrapper over boto3 put_object against Cloudflare R2.

    Every object lands in R2_BUCKET_NAME; the logical `bucket` argument
    becomes the top-level key prefix.
    """

    def __init__(self, s3_client=None, public_url: Optional[str] = None):
        self._s3 = s3_client
        self.public_url = (public_url if public_url is not None else R2_PUBLIC_URL).rstrip("/")

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    def _put(self, key: str, data: bytes, mime_type: str):
        self.s3.put_object(
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=mime_type,
        )

    async def upload(self, bucket: str, path: str, data: bytes, mime_type: str = "image/png") -> str:
        """Upload bytes and return the public URL."""
        key = f"{bucket}/{path}"
        try:
            await asyncio.to_thread(self._put, key, data, mime_type)
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            if status == 429 or status >= 500:
                raise TransientServiceError(f"R2 upload failed for key={key}: {e}") from e
            raise PermanentServiceError(f"R2 upload rejected for key={key}: {e}") from e
        except BotoCoreError as e:
            raise TransientServiceError(f"R2 upload failed for key={key}: {e}") from e

        public_url = f"{self.public_url}/{key}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url
