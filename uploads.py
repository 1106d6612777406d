"""Image uploads to S3 and presigned browser uploads."""
import logging
import uuid
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import config
from errors import UploadError

logger = logging.getLogger(__name__)

PRESIGN_EXPIRES_SECONDS = 60
MAX_IMAGE_BYTES = 10 * 1024 * 1024
DEFAULT_FOLDER = "products"


def build_key(file_name: str, folder: Optional[str]) -> str:
    clean_name = (file_name or "").split("/")[-1] or "file"
    ext = clean_name[clean_name.rfind("."):] if "." in clean_name else ""
    prefix = (folder or DEFAULT_FOLDER).strip("/") or DEFAULT_FOLDER
    return f"{prefix}/{uuid.uuid4()}{ext}"


class UploadService:
    def __init__(
        self,
        bucket: Optional[str] = config.AWS_S3_BUCKET,
        region: str = config.AWS_REGION,
        public_base_url: str = config.AWS_S3_PUBLIC_BASE_URL,
        object_acl: Optional[str] = config.AWS_S3_OBJECT_ACL,
        s3_client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = (public_base_url or "").strip()
        self.object_acl = object_acl
        self._s3_client = s3_client

    def _get_s3_client(self):
        if self._s3_client is None:
            self._s3_client = boto3.client("s3", region_name=self.region)
        return self._s3_client

    def _require_bucket(self) -> str:
        if not self.bucket:
            raise UploadError("AWS_S3_BUCKET is not set")
        return self.bucket

    def public_url(self, key: str) -> str:
        base = self.public_base_url or f"https://{self.bucket}.s3.{self.region}.amazonaws.com"
        return f"{base.rstrip('/')}/{key}"

    def presign_put_object(self, file_name: str, content_type: str, folder: Optional[str] = None) -> Dict[str, str]:
        bucket = self._require_bucket()
        key = build_key(file_name, folder)
        upload_url = self._get_s3_client().generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=PRESIGN_EXPIRES_SECONDS,
        )
        return {"upload_url": upload_url, "file_url": self.public_url(key), "key": key}

    def upload_image(self, data: bytes, file_name: str, content_type: str, folder: Optional[str] = None) -> Dict[str, str]:
        bucket = self._require_bucket()
        key = build_key(file_name, folder)
        params = {"Bucket": bucket, "Key": key, "Body": data, "ContentType": content_type}
        if self.object_acl:
            params["ACL"] = self.object_acl

        try:
            self._get_s3_client().put_object(**params)
        except ClientError as e:
            # Buckets with Object Ownership = "Bucket owner enforced" reject ACLs
            if e.response.get("Error", {}).get("Code") == "AccessControlListNotSupported":
                raise UploadError(
                    "S3 bucket does not allow ACLs (Object Ownership: Bucket owner enforced). "
                    "Remove AWS_S3_OBJECT_ACL and use a bucket policy (public read) or CloudFront to serve images."
                ) from e
            logger.exception("S3 upload failed for %s", key)
            raise UploadError(f"S3 upload failed: {e}") from e
        except BotoCoreError as e:
            logger.exception("S3 upload failed for %s", key)
            raise UploadError(f"S3 upload failed: {e}") from e

        logger.info("Uploaded %s (%d bytes) to s3://%s", key, len(data), bucket)
        return {"file_url": self.public_url(key), "key": key}
