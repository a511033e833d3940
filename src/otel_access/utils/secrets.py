# ABOUTME: Secret Store accessor for Kubernetes Secrets
# ABOUTME: Reads single decoded fields from Kubernetes Secrets via the kubectl client

"""Secret Store accessor: single decoded fields of Kubernetes Secrets."""

from __future__ import annotations

import base64
import binascii
from typing import TYPE_CHECKING

import structlog

from otel_access.utils.kubectl import NotFound

if TYPE_CHECKING:
    from otel_access.utils.kubectl import KubectlClient

logger = structlog.get_logger(__name__)


class SecretStore:
    """
    Read single fields from Kubernetes Secrets.

    Kubernetes stores Secret values base64-encoded under .data; this class
    does the jsonpath lookup and the decoding, nothing else.
    """

    def __init__(self, client: KubectlClient) -> None:
        self._client = client

    async def get_field(self, secret_name: str, namespace: str, field_path: str) -> bytes:
        """
        Read and decode one field of a Secret.

        Args:
            secret_name: Secret name, e.g. "argocd-initial-admin-secret"
            namespace: Secret namespace
            field_path: Key under .data, e.g. "password" or "admin-password"

        Returns:
            Decoded field value.

        Raises:
            NotFound: If the Secret or the field does not exist.
        """
        escaped = field_path.replace(".", "\\.")
        encoded = await self._client.get("secret", secret_name, namespace, f"{{.data.{escaped}}}")
        if not encoded:
            raise NotFound(
                f"Field '{field_path}' not found in secret {namespace}/{secret_name}",
            )
        try:
            value = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise NotFound(
                f"Field '{field_path}' in secret {namespace}/{secret_name} is not valid base64",
            ) from e
        logger.debug("Read secret field", secret=secret_name, namespace=namespace, field=field_path)
        return value
