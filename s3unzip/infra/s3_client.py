# s3unzip/infra/s3_client.py
import logging
from typing import Optional

import boto3
from botocore.config import Config

from s3unzip.core.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_s3_client = None


def build_s3_client(cfg: Settings):
    boto_cfg = Config(
        region_name=cfg.AWS_REGION,
        signature_version="s3v4",
        retries={"max_attempts": cfg.S3_MAX_ATTEMPTS, "mode": "standard"},
        connect_timeout=cfg.S3_CONNECT_TIMEOUT,
        read_timeout=cfg.S3_READ_TIMEOUT,
        s3={"addressing_style": cfg.S3_ADDRESSING_STYLE},
        # parts worden door onze eigen worker pool parallel verstuurd
        max_pool_connections=max(10, cfg.thread_count * 2),
    )
    kwargs = {"config": boto_cfg}
    if cfg.S3_ENDPOINT_URL:
        kwargs["endpoint_url"] = cfg.S3_ENDPOINT_URL
    if cfg.AWS_ACCESS_KEY_ID and cfg.AWS_SECRET_ACCESS_KEY:
        kwargs["aws_access_key_id"] = cfg.AWS_ACCESS_KEY_ID
        kwargs["aws_secret_access_key"] = cfg.AWS_SECRET_ACCESS_KEY
    return boto3.client("s3", **kwargs)


def get_s3(cfg: Optional[Settings] = None):
    """Lazy singleton S3 client met standaardconfig."""
    global _s3_client
    if cfg is not None:
        return build_s3_client(cfg)
    if _s3_client is None:
        _s3_client = build_s3_client(default_settings)
        logger.info(
            "S3 client initialized region=%s endpoint=%s",
            default_settings.AWS_REGION,
            default_settings.S3_ENDPOINT_URL or "aws",
        )
    return _s3_client
