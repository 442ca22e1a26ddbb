"""S3 object store client for s3sync.

Wraps a boto3 S3 client behind a single ``put_object(key, local_path)``
call and sorts failures into retryable and fatal errors so the upload
orchestrator can decide whether another attempt is worthwhile.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    PartialCredentialsError,
)

logger = logging.getLogger(__name__)

# S3 error codes worth another attempt.
RETRYABLE_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestThrottled",
        "RequestThrottledException",
        "TooManyRequestsException",
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeoutException",
        "InternalError",
        "ServiceUnavailable",
        "BandwidthLimitExceeded",
    }
)


class UploadError(Exception):
    """Base class for failed uploads."""


class RetryableUploadError(UploadError):
    """Transient failure: network, timeout or throttling."""


class FatalUploadError(UploadError):
    """Failure that another attempt cannot fix."""


class ObjectStore(Protocol):
    """Capability the orchestrator uploads through."""

    def put_object(self, key: str, local_path: Path) -> None: ...


def classify_client_error(exc: ClientError) -> UploadError:
    """Map a botocore ``ClientError`` onto the upload error taxonomy."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", "Unknown"))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    message = f"{code}: {error.get('Message', exc)}"
    if code in RETRYABLE_CODES or (status and int(status) >= 500) or status == 429:
        return RetryableUploadError(message)
    return FatalUploadError(message)


class S3ObjectStore:
    """Uploads local files into one bucket.

    botocore's own retries are limited to a single attempt; the
    orchestrator owns the retry policy.
    """

    def __init__(
        self,
        bucket: str,
        profile: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any | None = None,
    ):
        self.bucket = bucket
        if client is None:
            session = boto3.Session(profile_name=profile, region_name=region)
            client = session.client(
                "s3",
                endpoint_url=endpoint_url,
                config=BotoConfig(retries={"max_attempts": 1, "mode": "standard"}),
            )
            logger.info(
                "S3 client ready (bucket=%s, profile=%s, region=%s)",
                bucket,
                profile or "default",
                session.region_name or "default",
            )
        self._client = client

    def put_object(self, key: str, local_path: Path) -> None:
        """Upload *local_path* to ``s3://bucket/key``.

        ``FileNotFoundError`` propagates unchanged so callers can tell a
        vanished file apart from a failed upload.
        """
        with open(local_path, "rb") as body:
            try:
                self._client.put_object(Bucket=self.bucket, Key=key, Body=body)
            except ClientError as exc:
                raise classify_client_error(exc) from exc
            except (NoCredentialsError, PartialCredentialsError) as exc:
                raise FatalUploadError(str(exc)) from exc
            except (BotoConnectionError, HTTPClientError) as exc:
                raise RetryableUploadError(str(exc)) from exc
            except BotoCoreError as exc:
                raise FatalUploadError(str(exc)) from exc
        logger.debug("Uploaded %s to s3://%s/%s", local_path, self.bucket, key)
