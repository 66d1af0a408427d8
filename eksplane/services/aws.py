import hashlib
import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

import boto3
from botocore.exceptions import ClientError, NoCredentialsError
from pydantic import BaseModel

from eksplane.settings import Settings

logger = logging.getLogger(__name__)

ASSUME_ROLE_DURATION_SECONDS = 3600
CREDENTIALS_REFRESH_MARGIN = timedelta(minutes=5)

_TOKEN_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9-]")
MAX_CLIENT_REQUEST_TOKEN_LENGTH = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AwsCredentials(BaseModel):
    """Provider secret of an organization.

    Without static keys the default boto3 credential chain is used. A role
    ARN makes every client assume that role first.
    """

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    role_arn: str = ""
    external_id: str = ""


class SecretStore(Protocol):
    def get(self, secret_id: str) -> AwsCredentials:
        ...


class StaticSecretStore:
    """In-memory secret store keyed by secret ID."""

    def __init__(self, secrets: Optional[dict[str, AwsCredentials]] = None, default: Optional[AwsCredentials] = None):
        self.secrets = dict(secrets or {})
        self.default = default

    def get(self, secret_id: str) -> AwsCredentials:
        credentials = self.secrets.get(secret_id, self.default)
        if credentials is None:
            raise KeyError(f"secret {secret_id} not found")
        return credentials

    @classmethod
    def from_settings(cls, settings: Settings) -> "StaticSecretStore":
        """Every secret resolves to the credentials of the process."""
        return cls(
            default=AwsCredentials(
                access_key_id=settings.aws_access_key_id,
                secret_access_key=settings.aws_secret_access_key,
            )
        )


class AwsClientFactory:
    """Creates and caches boto3 clients per service, secret and region.

    Clients built from an assumed role are cached until shortly before the
    role session expires and are then rebuilt with fresh credentials.
    """

    def __init__(self, secret_store: SecretStore, clock: Callable[[], datetime] = _utcnow):
        self.secret_store = secret_store
        self.clock = clock
        self._clients: dict[tuple[str, str, str], tuple[Any, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def client(self, service: str, secret_id: str, region: str):
        key = (service, secret_id, region)
        with self._lock:
            cached = self._clients.get(key)
        if cached is not None:
            client, expires_at = cached
            if expires_at is None or self.clock() < expires_at - CREDENTIALS_REFRESH_MARGIN:
                return client
            logger.info("Credentials of %s client for secret %s expire at %s, renewing", service, secret_id, expires_at)

        credentials = self.secret_store.get(secret_id)
        client_credentials, expires_at = self._client_credentials(credentials, region)
        client = boto3.client(service, region_name=region, **client_credentials)

        with self._lock:
            self._clients[key] = (client, expires_at)
        return client

    def _client_credentials(
        self, credentials: AwsCredentials, region: str
    ) -> tuple[dict[str, str], Optional[datetime]]:
        static: dict[str, str] = {}
        if credentials.access_key_id:
            static = {
                "aws_access_key_id": credentials.access_key_id,
                "aws_secret_access_key": credentials.secret_access_key,
            }
            if credentials.session_token:
                static["aws_session_token"] = credentials.session_token

        if not credentials.role_arn:
            return static, None

        try:
            sts = boto3.client("sts", region_name=region, **static)
            assume_kwargs = {
                "RoleArn": credentials.role_arn,
                "RoleSessionName": "eksplane",
                "DurationSeconds": ASSUME_ROLE_DURATION_SECONDS,
            }
            if credentials.external_id:
                assume_kwargs["ExternalId"] = credentials.external_id
            assumed = sts.assume_role(**assume_kwargs)
        except NoCredentialsError as e:
            raise ValueError(
                f"Failed to locate AWS credentials: {e}. "
                "Use env vars, IAM role (EC2/IRSA), or other default provider chain."
            ) from e
        except ClientError as e:
            raise ValueError(f"Failed to assume role {credentials.role_arn}: {e}") from e

        creds = assumed["Credentials"]
        expires_at = creds.get("Expiration")
        if expires_at is None:
            expires_at = self.clock() + timedelta(seconds=ASSUME_ROLE_DURATION_SECONDS)
        return {
            "aws_access_key_id": creds["AccessKeyId"],
            "aws_secret_access_key": creds["SecretAccessKey"],
            "aws_session_token": creds["SessionToken"],
        }, expires_at


def client_request_token(run_id: str, *parts: str) -> str:
    """Idempotency token of a mutation issued by a workflow run.

    Retries of the same activity in the same run produce the same token.
    CloudFormation requires the token to start with a letter.
    """
    token = "-".join(parts + (run_id,))
    token = _TOKEN_INVALID_CHARS.sub("-", token)
    if not token[:1].isalpha():
        token = "t" + token
    if len(token) > MAX_CLIENT_REQUEST_TOKEN_LENGTH:
        digest = hashlib.sha1(token.encode("utf-8")).hexdigest()[:8]
        token = f"{token[:MAX_CLIENT_REQUEST_TOKEN_LENGTH - 9]}-{digest}"
    return token


def error_code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def error_message(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Message", "")
