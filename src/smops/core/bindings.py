"""Binding lifecycle: broker bindings and their credential secrets.

This module coordinates the broker client and the credential store for
binding creation, secret restoration and deletion. It is free of HTTP
routing concerns; the routing layer maps the raised errors to responses
(`ConflictError` to 409, `BrokerError` to its status, and so on).

Broker state and cluster state may diverge briefly. A binding created at the
broker whose secret target turns out to be occupied is not rolled back: the
caller either restores the secret to another target or deletes the binding.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Protocol

from kubernetes.client import V1Secret

from smops.core.config import Settings
from smops.core.errors import ConflictError
from smops.core.models import Accepted, ServiceBinding
from smops.core.secrets import (
    MANAGED_BY_LABEL,
    OPERATOR_NAME,
    SERVICE_BINDING_ID_LABEL,
    CredentialStore,
    build_binding_secret,
    ownership_labels,
)

logger = logging.getLogger(__name__)


class BindingsAdapter(Protocol):
    """Broker operations the binding lifecycle relies on."""

    def create_service_binding(self, binding: ServiceBinding) -> ServiceBinding | Accepted:
        ...

    def service_binding(self, service_binding_id: str) -> ServiceBinding:
        ...

    def service_bindings(self) -> list[ServiceBinding]:
        ...

    def service_bindings_for(self, service_instance_id: str) -> list[ServiceBinding]:
        ...

    def delete_service_binding(self, service_binding_id: str) -> Accepted | None:
        ...


@dataclass(frozen=True)
class BindingRequest:
    """
    A request to create a binding and materialize its credentials.

    Attributes:
        name: Name of the binding at the broker.
        service_instance_id: Instance the binding belongs to.
        parameters: Opaque binding parameters passed to the broker.
        labels: Broker labels of the binding.
        secret_name: Target secret name; defaults to the binding name.
        secret_namespace: Target secret namespace; defaults to the configured
            secret namespace.
    """

    name: str
    service_instance_id: str
    parameters: Any = None
    labels: Mapping[str, list[str]] = field(default_factory=dict)
    secret_name: str | None = None
    secret_namespace: str | None = None


@dataclass(frozen=True)
class BindingDeletion:
    """Result of deleting a binding at the broker and its secrets in the cluster."""

    binding_id: str
    accepted: bool
    deleted_secrets: list[tuple[str, str]]


class BindingLifecycle:
    """Creates, restores and deletes bindings together with their secrets."""

    def __init__(
        self,
        client: BindingsAdapter,
        store: CredentialStore,
        settings: Settings | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings or Settings()

    def create(self, request: BindingRequest) -> ServiceBinding | Accepted:
        """
        Create a binding at the broker and store its credentials in a secret.

        On a synchronous result the secret is created at the requested target
        and the returned binding names it. On `Accepted` no credentials exist
        yet and no secret is created.

        Raises:
            ConflictError: If the secret target is occupied. The broker
                binding stays in place and its id is on `binding_id`.
            BrokerError: If the broker rejected the binding.
        """
        result = self.client.create_service_binding(
            ServiceBinding(
                name=request.name,
                service_instance_id=request.service_instance_id,
                parameters=request.parameters,
                labels=request.labels,
            )
        )
        if isinstance(result, Accepted):
            logger.info("binding %s accepted by broker, no secret created", request.name)
            return result

        secret_name = request.secret_name or result.name or request.name
        secret_namespace = request.secret_namespace or self.settings.secret_namespace
        if not result.service_instance_id:
            result = replace(result, service_instance_id=request.service_instance_id)

        try:
            self.store.create(build_binding_secret(result, secret_name, secret_namespace))
        except ConflictError as exc:
            logger.warning(
                "binding %s created but secret %s/%s is occupied",
                result.id,
                secret_namespace,
                secret_name,
            )
            raise ConflictError(exc.name, exc.namespace, binding_id=result.id) from exc
        logger.info(
            "binding %s stored in secret %s/%s", result.id, secret_namespace, secret_name
        )
        return replace(result, secret_name=secret_name, secret_namespace=secret_namespace)

    def restore(
        self, binding_id: str, secret_name: str, secret_namespace: str
    ) -> V1Secret:
        """
        Recreate the secret of an existing binding from broker credentials.

        A binding owns at most one secret per namespace.

        Raises:
            ConflictError: If the secret target is occupied, or the binding
                already has a secret in `secret_namespace` (named in the error).
            BrokerError: If the binding could not be fetched.
        """
        existing = self.store.get_all_by_labels(
            ownership_labels(binding_id), secret_namespace
        )
        if existing:
            raise ConflictError(
                existing[0].metadata.name, secret_namespace, binding_id=binding_id
            )
        binding = self.client.service_binding(binding_id)
        created = self.store.create(
            build_binding_secret(binding, secret_name, secret_namespace)
        )
        logger.info(
            "restored secret %s/%s for binding %s", secret_namespace, secret_name, binding_id
        )
        return created

    def delete(self, binding_id: str) -> BindingDeletion:
        """
        Delete a binding at the broker, then every secret labelled with it.

        If the broker call fails its error propagates unchanged and no secret
        is touched. A binding without secrets deletes cleanly.
        """
        result = self.client.delete_service_binding(binding_id)
        removed = self.store.delete_for_binding(binding_id)
        deleted = [(s.metadata.name, s.metadata.namespace) for s in removed]
        logger.info("deleted binding %s and %d secret(s)", binding_id, len(deleted))
        return BindingDeletion(
            binding_id=binding_id,
            accepted=isinstance(result, Accepted),
            deleted_secrets=deleted,
        )

    def describe(self, binding_id: str) -> ServiceBinding:
        """Return a broker binding annotated with the target of its secret."""
        binding = self.client.service_binding(binding_id)
        return self._with_secret_ref(binding, self.store.secrets_for_binding(binding_id))

    def list_bindings(self, service_instance_id: str | None = None) -> list[ServiceBinding]:
        """List broker bindings, each annotated with the target of its secret."""
        if service_instance_id:
            bindings = self.client.service_bindings_for(service_instance_id)
        else:
            bindings = self.client.service_bindings()
        by_binding: dict[str, list[V1Secret]] = {}
        for secret in self.store.get_all_by_labels({MANAGED_BY_LABEL: OPERATOR_NAME}):
            labels = secret.metadata.labels or {}
            binding_id = labels.get(SERVICE_BINDING_ID_LABEL)
            if binding_id:
                by_binding.setdefault(binding_id, []).append(secret)
        return [self._with_secret_ref(b, by_binding.get(b.id, [])) for b in bindings]

    @staticmethod
    def _with_secret_ref(
        binding: ServiceBinding, secrets: list[V1Secret]
    ) -> ServiceBinding:
        if not secrets:
            return binding
        if len(secrets) > 1:
            logger.warning("binding %s has %d secrets", binding.id, len(secrets))
        meta = secrets[0].metadata
        return replace(binding, secret_name=meta.name, secret_namespace=meta.namespace)
