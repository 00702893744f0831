"""Cloud-native secret resolution.

Values such as the database password or the account service API key may be
given as references into AWS Secrets Manager or GCP Secret Manager instead
of plaintext. Anything that is not a reference is returned unchanged, which
keeps local development on plain env vars and .env files.

Resolved references are cached for the life of the process: a warm Lambda
container rebuilds its runtime on every invocation and would otherwise hit
Secrets Manager each time. Failures surface as ConfigError naming the
reference, never the value.
"""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache

import requests

from scripts.provisioning.errors import ConfigError

logger = logging.getLogger("provisioning.secrets")

_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"
_GCP_METADATA_PROJECT_URL = (
    "http://metadata.google.internal/computeMetadata/v1/project/project-id"
)


def resolve_secret(value: str) -> str:
    """Resolve a secret reference to its plaintext value.

    Supported formats:
      - "aws-secret://name"          -> AWS Secrets Manager
      - "aws-secret://name#key"      -> AWS Secrets Manager, one key of a JSON secret
      - "gcp-secret://name"          -> GCP Secret Manager, latest version
      - "gcp-secret://projects/..."  -> GCP Secret Manager, full resource name
    """
    if value.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    if value.startswith(_GCP_PREFIX):
        return _resolve_gcp_secret(value[len(_GCP_PREFIX):])
    return value


@lru_cache(maxsize=32)
def _resolve_aws_secret(ref: str) -> str:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError

    secret_name, _, json_key = ref.partition("#")
    logger.debug("Fetching AWS secret %s", secret_name)
    client = boto3.client(
        "secretsmanager",
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
    )
    try:
        secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]
    except (BotoCoreError, ClientError) as exc:
        raise ConfigError(f"cannot read AWS secret {secret_name!r}: {exc}") from exc
    if not json_key:
        return secret_string
    try:
        return str(json.loads(secret_string)[json_key])
    except (ValueError, KeyError, TypeError) as exc:
        raise ConfigError(f"AWS secret {secret_name!r} has no JSON key {json_key!r}") from exc


@lru_cache(maxsize=32)
def _resolve_gcp_secret(ref: str) -> str:
    from google.api_core.exceptions import GoogleAPIError
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID") or _gcp_project_from_metadata()
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    logger.debug("Fetching GCP secret %s", name)
    client = secretmanager.SecretManagerServiceClient()
    try:
        response = client.access_secret_version(request={"name": name})
    except GoogleAPIError as exc:
        raise ConfigError(f"cannot read GCP secret {name!r}: {exc}") from exc
    return response.payload.data.decode("UTF-8")


def _gcp_project_from_metadata() -> str:
    """Project id from the metadata server (Cloud Run / GCE only)."""
    try:
        resp = requests.get(
            _GCP_METADATA_PROJECT_URL,
            headers={"Metadata-Flavor": "Google"},
            timeout=2,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise ConfigError(
            "Cannot determine GCP project ID. Set GCP_PROJECT_ID env var."
        ) from exc
    return resp.text.strip()


def resolve_database_url() -> str:
    """DATABASE_URL if set, otherwise assembled from PG_* variables."""
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = os.environ.get("PG_USER", "provisioning")
    password = resolve_secret(os.environ.get("PG_PASSWORD", "localdev-change-me"))
    database = os.environ.get("PG_DATABASE", "provisioning")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"
