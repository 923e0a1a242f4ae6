"""Credential persistence: binding credentials as labelled Kubernetes secrets.

A managed secret is owned by sm-ops and identified by labels, never by its
name: the caller may have picked any `(name, namespace)` for it. Creation
never overwrites. Whatever already occupies the target, labelled or not, is
reported as a conflict and left untouched.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Mapping

from kubernetes.client import V1ObjectMeta, V1Secret

from smops.core.errors import ConflictError, NotFoundError
from smops.core.models import ServiceBinding
from smops.core.objects import NamespacedProvider

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
OPERATOR_NAME = "sm-ops"
SERVICE_BINDING_ID_LABEL = "smops.io/service-binding-id"
SERVICE_INSTANCE_ID_LABEL = "smops.io/service-instance-id"

SCALAR_CREDENTIALS_KEY = "credentials"


def ownership_labels(binding_id: str) -> dict[str, str]:
    """Labels that select every managed secret of a binding."""
    return {MANAGED_BY_LABEL: OPERATOR_NAME, SERVICE_BINDING_ID_LABEL: binding_id}


def credentials_to_data(credentials: Any) -> dict[str, str]:
    """
    Flatten broker credentials into secret data (base64 encoded).

    Each top-level key becomes one entry. Strings are kept verbatim, any
    other JSON value is stored as compact JSON. Credentials that are not a
    JSON object go under a single `credentials` key.
    """
    if isinstance(credentials, Mapping):
        items = credentials.items()
    elif credentials is None:
        items = []
    else:
        items = [(SCALAR_CREDENTIALS_KEY, credentials)]

    data: dict[str, str] = {}
    for key, value in items:
        text = value if isinstance(value, str) else json.dumps(value, separators=(",", ":"))
        data[str(key)] = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return data


def build_binding_secret(binding: ServiceBinding, name: str, namespace: str) -> V1Secret:
    """Return a managed secret carrying the binding's credentials and identity labels."""
    labels = ownership_labels(binding.id)
    labels[SERVICE_INSTANCE_ID_LABEL] = binding.service_instance_id
    return V1Secret(
        api_version="v1",
        kind="Secret",
        type="Opaque",
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        data=credentials_to_data(binding.credentials),
    )


class CredentialStore:
    """Secrets-specific layer over a namespaced object provider."""

    def __init__(self, provider: NamespacedProvider[V1Secret]) -> None:
        self.provider = provider

    def create(self, secret: V1Secret) -> V1Secret:
        """
        Create `secret` only if its `(name, namespace)` is free.

        The target is looked up first so an occupied name is reported without
        a write attempt. The provider's create is itself create-if-absent (the
        API server answers 409), which covers a concurrent creator that wins
        between the lookup and the write.

        Raises:
            ConflictError: If anything already exists at the target.
        """
        name, namespace = secret.metadata.name, secret.metadata.namespace
        try:
            self.provider.get(name, namespace)
        except NotFoundError:
            pass
        else:
            logger.info("secret %s/%s already exists", namespace, name)
            raise ConflictError(name, namespace)
        return self.provider.create(secret)

    def get(self, name: str, namespace: str) -> V1Secret:
        return self.provider.get(name, namespace)

    def get_all_by_labels(
        self, labels: Mapping[str, str], namespace: str | None = None
    ) -> list[V1Secret]:
        return self.provider.get_all_by_labels(labels, namespace)

    def delete(self, secret: V1Secret) -> None:
        self.provider.delete(secret)

    def secrets_for_binding(self, binding_id: str) -> list[V1Secret]:
        """Return the managed secrets of a binding, across all namespaces."""
        return self.get_all_by_labels(ownership_labels(binding_id))

    def delete_for_binding(self, binding_id: str) -> list[V1Secret]:
        """Delete every managed secret of a binding; none at all is fine."""
        secrets = self.secrets_for_binding(binding_id)
        for secret in secrets:
            self.delete(secret)
        if not secrets:
            logger.debug("no secrets to delete for binding %s", binding_id)
        return secrets
