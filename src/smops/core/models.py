"""Core domain models for the Service Manager broker.

These models represent broker entities in a simple, immutable form. They
are intentionally free of HTTP and Kubernetes types: adapters decode broker
JSON documents into them with `from_dict` and encode requests with `to_dict`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from smops.core.errors import DecodeError

NAMESPACE_LABEL = "_namespace"
CLUSTER_ID_LABEL = "_clusterid"


def _require(doc: Mapping[str, Any], key: str, kind: str) -> Any:
    try:
        return doc[key]
    except KeyError:
        raise DecodeError(f"{kind} document has no {key!r} field") from None


def _mapping(doc: Any, kind: str) -> Mapping[str, Any]:
    if not isinstance(doc, Mapping):
        raise DecodeError(f"{kind} document is not a JSON object")
    return doc


def _labels(raw: Any) -> dict[str, list[str]]:
    """Normalize broker labels to `key -> list of values`."""
    if not isinstance(raw, Mapping):
        return {}
    out: dict[str, list[str]] = {}
    for key, values in raw.items():
        if isinstance(values, (list, tuple)):
            out[str(key)] = [str(v) for v in values]
        elif values is not None:
            out[str(key)] = [str(values)]
    return out


def _first_label(labels: Mapping[str, list[str]], key: str) -> str:
    values = labels.get(key) or []
    return values[0] if values else ""


@dataclass(frozen=True)
class Accepted:
    """
    Broker answered 202: the operation was queued and no resource is available yet.

    Attributes:
        location: The broker's operation URL taken from the `Location` header,
            if it sent one. Nothing in sm-ops polls it.
    """

    location: str | None = None


@dataclass(frozen=True)
class ErrorResponse:
    """Decoded broker failure body."""

    error: str = ""
    description: str = ""

    @property
    def message(self) -> str:
        if self.error and self.description:
            return f"{self.error}: {self.description}"
        return self.error or self.description

    @classmethod
    def from_dict(cls, doc: Any) -> "ErrorResponse":
        doc = _mapping(doc, "error response")
        error = doc.get("error")
        description = doc.get("description")
        if not isinstance(error, (str, type(None))) or not isinstance(
            description, (str, type(None))
        ):
            raise DecodeError("error response fields must be strings")
        if not error and not description:
            raise DecodeError("error response has neither error nor description")
        return cls(error=error or "", description=description or "")


@dataclass(frozen=True)
class ServiceOffering:
    """A catalog entry describing a service the broker can provision."""

    id: str
    name: str
    description: str = ""
    catalog_name: str = ""
    broker_id: str = ""
    bindable: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, doc: Any) -> "ServiceOffering":
        doc = _mapping(doc, "service offering")
        return cls(
            id=str(_require(doc, "id", "service offering")),
            name=str(doc.get("name") or ""),
            description=str(doc.get("description") or ""),
            catalog_name=str(doc.get("catalog_name") or ""),
            broker_id=str(doc.get("broker_id") or ""),
            bindable=bool(doc.get("bindable", False)),
            metadata=dict(doc.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ServicePlan:
    """A plan of a service offering. References its offering by id."""

    id: str
    name: str
    service_offering_id: str = ""
    description: str = ""
    catalog_name: str = ""
    free: bool = False
    bindable: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, doc: Any) -> "ServicePlan":
        doc = _mapping(doc, "service plan")
        return cls(
            id=str(_require(doc, "id", "service plan")),
            name=str(doc.get("name") or ""),
            service_offering_id=str(doc.get("service_offering_id") or ""),
            description=str(doc.get("description") or ""),
            catalog_name=str(doc.get("catalog_name") or ""),
            free=bool(doc.get("free", False)),
            bindable=bool(doc.get("bindable", False)),
            metadata=dict(doc.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ServiceOfferingDetails:
    """A service offering together with the plans that belong to it."""

    offering: ServiceOffering
    plans: list[ServicePlan]


@dataclass(frozen=True)
class ServiceInstance:
    """
    A provisioned managed-service resource, owned by the broker.

    `service_plan_name` is only populated by the composite
    instance-with-plan-name fetch. `namespace` and `cluster_id` are sent on
    create as the reserved `_namespace` / `_clusterid` labels.
    """

    id: str = ""
    name: str = ""
    service_plan_id: str = ""
    namespace: str = ""
    cluster_id: str = ""
    subaccount_id: str = ""
    service_plan_name: str | None = None
    labels: Mapping[str, list[str]] = field(default_factory=dict)
    parameters: Any = None
    shared: bool = False
    ready: bool = False

    @classmethod
    def from_dict(cls, doc: Any) -> "ServiceInstance":
        doc = _mapping(doc, "service instance")
        labels = _labels(doc.get("labels"))
        context = doc.get("context") if isinstance(doc.get("context"), Mapping) else {}
        return cls(
            id=str(_require(doc, "id", "service instance")),
            name=str(doc.get("name") or ""),
            service_plan_id=str(doc.get("service_plan_id") or ""),
            namespace=str(
                context.get("namespace") or _first_label(labels, NAMESPACE_LABEL)
            ),
            cluster_id=str(
                context.get("clusterid") or _first_label(labels, CLUSTER_ID_LABEL)
            ),
            subaccount_id=str(
                context.get("subaccount_id") or doc.get("subaccount_id") or ""
            ),
            labels=labels,
            parameters=doc.get("parameters"),
            shared=bool(doc.get("shared", False)),
            ready=bool(doc.get("ready", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Encode a provisioning request body."""
        labels = {k: list(v) for k, v in self.labels.items()}
        if self.namespace:
            labels[NAMESPACE_LABEL] = [self.namespace]
        if self.cluster_id:
            labels[CLUSTER_ID_LABEL] = [self.cluster_id]
        body: dict[str, Any] = {
            "name": self.name,
            "service_plan_id": self.service_plan_id,
        }
        if labels:
            body["labels"] = labels
        if self.parameters is not None:
            body["parameters"] = self.parameters
        return body


@dataclass(frozen=True)
class ServiceInstanceUpdate:
    """
    A partial update of a service instance.

    Only fields that are not None are sent. `id` addresses the instance in the
    URL path and is never part of the body. Toggling `shared` must be done in
    a request of its own.
    """

    id: str
    name: str | None = None
    service_plan_id: str | None = None
    parameters: Any = None
    labels: Mapping[str, list[str]] | None = None
    shared: bool | None = None

    def conflicting_fields(self) -> list[str]:
        """Return the fields set alongside `shared`, which the broker rejects."""
        if self.shared is None:
            return []
        candidates = {
            "name": self.name,
            "service_plan_id": self.service_plan_id,
            "parameters": self.parameters,
            "labels": self.labels or None,
        }
        return [name for name, value in candidates.items() if value is not None]

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.name is not None:
            body["name"] = self.name
        if self.service_plan_id is not None:
            body["service_plan_id"] = self.service_plan_id
        if self.parameters is not None:
            body["parameters"] = self.parameters
        if self.labels:
            body["labels"] = {k: list(v) for k, v in self.labels.items()}
        if self.shared is not None:
            body["shared"] = self.shared
        return body


@dataclass(frozen=True)
class ServiceBinding:
    """
    A credential-issuing link to a service instance.

    `credentials` are sensitive and excluded from `repr`. `secret_name` and
    `secret_namespace` are caller-side: they name the Kubernetes secret the
    credentials go to and are never sent to the broker.
    """

    id: str = ""
    name: str = ""
    service_instance_id: str = ""
    parameters: Any = None
    credentials: Any = field(default=None, repr=False)
    labels: Mapping[str, list[str]] = field(default_factory=dict)
    secret_name: str | None = None
    secret_namespace: str | None = None

    @classmethod
    def from_dict(cls, doc: Any) -> "ServiceBinding":
        doc = _mapping(doc, "service binding")
        return cls(
            id=str(_require(doc, "id", "service binding")),
            name=str(doc.get("name") or ""),
            service_instance_id=str(doc.get("service_instance_id") or ""),
            parameters=doc.get("parameters"),
            credentials=doc.get("credentials"),
            labels=_labels(doc.get("labels")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Encode a binding request body."""
        body: dict[str, Any] = {
            "name": self.name,
            "service_instance_id": self.service_instance_id,
        }
        if self.parameters is not None:
            body["parameters"] = self.parameters
        if self.labels:
            body["labels"] = {k: list(v) for k, v in self.labels.items()}
        return body
