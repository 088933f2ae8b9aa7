# s3unzip/core/settings.py
from __future__ import annotations
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

MB = 1024 * 1024


class Settings(BaseSettings):
    # --- S3 client ---
    AWS_REGION: str = "eu-west-1"
    S3_ENDPOINT_URL: Optional[str] = None  # minio / localstack / R2
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    S3_ADDRESSING_STYLE: str = "auto"  # auto | virtual | path
    S3_CONNECT_TIMEOUT: int = 5
    S3_READ_TIMEOUT: int = 60
    S3_MAX_ATTEMPTS: int = 5
    S3_RETRY_ATTEMPTS: int = 3  # eigen retry_on laag bovenop botocore

    # --- multipart upload ---
    upload_part_bytes_limit: int = 20 * MB
    thread_count: int = 4
    queue_size: int = 4
    await_termination_seconds: float = 2.0
    output_content_type: Optional[str] = None
    canned_acl: Optional[str] = None

    # --- split text ---
    file_bytes_limit: int = 100 * MB
    header: bool = False
    delimiter: str = "\n"

    # --- driver ---
    content_types: List[str] = []  # leeg = alles accepteren
    fail_fast: bool = True
    read_chunk_bytes: int = 64 * 1024

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="S3UNZIP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def multipart_config(self):
        from s3unzip.upload.multipart import MultipartUploadConfig

        return MultipartUploadConfig(
            upload_part_bytes_limit=self.upload_part_bytes_limit,
            thread_count=self.thread_count,
            queue_size=self.queue_size,
            await_termination_seconds=self.await_termination_seconds,
            content_type=self.output_content_type,
            canned_acl=self.canned_acl,
        )


settings = Settings()  # leest .env
