from __future__ import annotations

import logging
from typing import Optional

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)

_RETRY_CONFIG = Config(retries={"max_attempts": 3, "mode": "standard"})


def make_client(service: str, region: str, *, endpoint_url: Optional[str] = None):
    """boto3 client with standard retry mode; one per worker process is enough."""
    logger.debug("aws client | service=%s | region=%s | endpoint=%s", service, region, endpoint_url or "(default)")
    return boto3.client(service, region_name=region, endpoint_url=endpoint_url, config=_RETRY_CONFIG)


def error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None) or {}
    return str((response.get("Error") or {}).get("Code") or "")
