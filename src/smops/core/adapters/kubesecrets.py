from __future__ import annotations

import logging
from typing import Mapping

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from smops.core.errors import ConflictError, NotFoundError
from smops.core.objects import label_selector

logger = logging.getLogger(__name__)


class KubernetesSecretProvider:
    """Adapter around the Kubernetes CoreV1 Secrets API."""

    def __init__(self, core_v1: client.CoreV1Api) -> None:
        self.core_v1 = core_v1

    @classmethod
    def from_cluster(cls) -> "KubernetesSecretProvider":
        """Build a provider from in-cluster config, falling back to kubeconfig."""
        try:
            config.load_incluster_config()
        except ConfigException:
            config.load_kube_config()
        return cls(client.CoreV1Api())

    def get(self, name: str, namespace: str) -> client.V1Secret:
        """Return the secret at `(name, namespace)`."""
        try:
            return self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError("secret", name, namespace) from exc
            raise

    def get_all(self, namespace: str | None = None) -> list[client.V1Secret]:
        """List secrets in one namespace, or in all namespaces."""
        return self._list(namespace=namespace)

    def get_all_by_labels(
        self, labels: Mapping[str, str], namespace: str | None = None
    ) -> list[client.V1Secret]:
        """List secrets carrying every label in `labels`."""
        return self._list(namespace=namespace, selector=label_selector(labels))

    def create(self, obj: client.V1Secret) -> client.V1Secret:
        """Create a secret. The API server rejects an occupied name with 409."""
        name, namespace = obj.metadata.name, obj.metadata.namespace
        try:
            created = self.core_v1.create_namespaced_secret(
                namespace=namespace, body=obj
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(name, namespace) from exc
            raise
        logger.info("created secret %s/%s", namespace, name)
        return created

    def delete(self, obj: client.V1Secret) -> None:
        """Delete a secret; a secret that is already gone is ignored."""
        name, namespace = obj.metadata.name, obj.metadata.namespace
        try:
            self.core_v1.delete_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                logger.debug("secret %s/%s already deleted", namespace, name)
                return
            raise
        logger.info("deleted secret %s/%s", namespace, name)

    def _list(
        self, *, namespace: str | None, selector: str | None = None
    ) -> list[client.V1Secret]:
        kwargs = {"label_selector": selector} if selector else {}
        if namespace:
            result = self.core_v1.list_namespaced_secret(namespace=namespace, **kwargs)
        else:
            result = self.core_v1.list_secret_for_all_namespaces(**kwargs)
        return list(result.items or [])
