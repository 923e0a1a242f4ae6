from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, TypeVar

import httpx

from smops.core.auth import AuthManager, BrokerSession
from smops.core.errors import BrokerError, DecodeError, TransportError, ValidationError
from smops.core.models import (
    Accepted,
    ErrorResponse,
    ServiceBinding,
    ServiceInstance,
    ServiceInstanceUpdate,
    ServiceOffering,
    ServiceOfferingDetails,
    ServicePlan,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_OFFERINGS_PATH = "/v1/service_offerings"
SERVICE_PLANS_PATH = "/v1/service_plans"
SERVICE_INSTANCES_PATH = "/v1/service_instances"
SERVICE_BINDINGS_PATH = "/v1/service_bindings"

FIELD_QUERY_KEY = "fieldQuery"
_PLANS_FOR_OFFERING_QUERY = "service_offering_id eq '{}'"
_BINDINGS_FOR_INSTANCE_QUERY = "service_instance_id eq '{}'"

_SYNC_STATUSES = frozenset({200, 201})


class ServiceManagerClient:
    """Adapter around the Service Manager REST API of one tenant.

    Reads decode the success body or raise `BrokerError`. Writes return the
    final resource on 200/201, `Accepted` on 202, or raise `BrokerError`.
    Every call is attempted exactly once.
    """

    def __init__(self, session: BrokerSession) -> None:
        self.session = session

    @classmethod
    def for_secret(
        cls, auth: AuthManager, secret_name: str, secret_namespace: str
    ) -> "ServiceManagerClient":
        """Build a client for an explicitly requested tenant.

        A missing secret raises `NotFoundError` to the caller.
        """
        return cls(auth.resolve(secret_name, secret_namespace))

    @classmethod
    def defaults(cls, auth: AuthManager) -> "ServiceManagerClient | None":
        """Build a client for the default tenant, or None if it is not configured."""
        session = auth.defaults()
        return cls(session) if session is not None else None

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ServiceManagerClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Offerings and plans

    def service_offerings(self) -> list[ServiceOffering]:
        """List all service offerings visible to the tenant."""
        return self._get_items(SERVICE_OFFERINGS_PATH, ServiceOffering.from_dict)

    def service_offering(self, service_offering_id: str) -> ServiceOffering:
        return self._get_one(
            f"{SERVICE_OFFERINGS_PATH}/{service_offering_id}", ServiceOffering.from_dict
        )

    def service_offering_details(self, service_offering_id: str) -> ServiceOfferingDetails:
        """Return an offering joined with its plans (filtered by the broker)."""
        query = _field_query(
            _PLANS_FOR_OFFERING_QUERY, service_offering_id, "service_offering_id"
        )
        offering = self.service_offering(service_offering_id)
        plans = self._get_items(SERVICE_PLANS_PATH, ServicePlan.from_dict, params=query)
        return ServiceOfferingDetails(offering=offering, plans=plans)

    def service_plans(self) -> list[ServicePlan]:
        return self._get_items(SERVICE_PLANS_PATH, ServicePlan.from_dict)

    def service_plan(self, service_plan_id: str) -> ServicePlan:
        return self._get_one(f"{SERVICE_PLANS_PATH}/{service_plan_id}", ServicePlan.from_dict)

    # Instances

    def service_instances(self) -> list[ServiceInstance]:
        return self._get_items(SERVICE_INSTANCES_PATH, ServiceInstance.from_dict)

    def service_instance(self, service_instance_id: str) -> ServiceInstance:
        return self._get_one(
            f"{SERVICE_INSTANCES_PATH}/{service_instance_id}", ServiceInstance.from_dict
        )

    def service_instance_parameters(self, service_instance_id: str) -> dict[str, Any]:
        return self._get_one(
            f"{SERVICE_INSTANCES_PATH}/{service_instance_id}/parameters", _parameters
        )

    def service_instance_with_plan_name(self, service_instance_id: str) -> ServiceInstance:
        """Return an instance with `service_plan_name` filled from its plan.

        Either lookup failing fails the whole call.
        """
        instance = self.service_instance(service_instance_id)
        plan = self.service_plan(instance.service_plan_id)
        return replace(instance, service_plan_name=plan.name)

    def create_service_instance(
        self, instance: ServiceInstance
    ) -> ServiceInstance | Accepted:
        response = self._request("POST", SERVICE_INSTANCES_PATH, json=instance.to_dict())
        return self._write_result(response, ServiceInstance.from_dict)

    def update_service_instance(
        self, update: ServiceInstanceUpdate
    ) -> ServiceInstance | Accepted:
        """
        Patch a service instance.

        Raises:
            ValidationError: If `shared` is set together with any other field,
                or the update has no id. Nothing is sent in that case.
        """
        if not update.id:
            raise ValidationError("service instance update requires an id", ["id"])
        conflicting = update.conflicting_fields()
        if conflicting:
            raise ValidationError(
                "invalid request body - shared must be updated alone, also set: "
                + ", ".join(conflicting),
                conflicting,
            )
        response = self._request(
            "PATCH", f"{SERVICE_INSTANCES_PATH}/{update.id}", json=update.to_dict()
        )
        return self._write_result(response, ServiceInstance.from_dict)

    def delete_service_instance(self, service_instance_id: str) -> Accepted | None:
        response = self._request("DELETE", f"{SERVICE_INSTANCES_PATH}/{service_instance_id}")
        return self._delete_result(response)

    # Bindings

    def service_bindings(self) -> list[ServiceBinding]:
        return self._get_items(SERVICE_BINDINGS_PATH, ServiceBinding.from_dict)

    def service_bindings_for(self, service_instance_id: str) -> list[ServiceBinding]:
        """List the bindings of one instance (filtered by the broker)."""
        return self._get_items(
            SERVICE_BINDINGS_PATH,
            ServiceBinding.from_dict,
            params=_field_query(
                _BINDINGS_FOR_INSTANCE_QUERY, service_instance_id, "service_instance_id"
            ),
        )

    def service_binding(self, service_binding_id: str) -> ServiceBinding:
        return self._get_one(
            f"{SERVICE_BINDINGS_PATH}/{service_binding_id}", ServiceBinding.from_dict
        )

    def service_binding_parameters(self, service_binding_id: str) -> dict[str, Any]:
        return self._get_one(
            f"{SERVICE_BINDINGS_PATH}/{service_binding_id}/parameters", _parameters
        )

    def create_service_binding(self, binding: ServiceBinding) -> ServiceBinding | Accepted:
        response = self._request("POST", SERVICE_BINDINGS_PATH, json=binding.to_dict())
        return self._write_result(response, ServiceBinding.from_dict)

    def delete_service_binding(self, service_binding_id: str) -> Accepted | None:
        response = self._request("DELETE", f"{SERVICE_BINDINGS_PATH}/{service_binding_id}")
        return self._delete_result(response)

    # Plumbing

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self.session.url + path
        try:
            response = self.session.http.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            logger.error("%s %s failed: %s", method, path, exc)
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        logger.debug("%s %s -> %s", method, path, response.status_code)
        return response

    def _get_one(
        self, path: str, decode: Callable[[Any], T], *, params: dict | None = None
    ) -> T:
        response = self._request("GET", path, params=params)
        if response.status_code != 200:
            raise self._error(response)
        return decode(_json(response))

    def _get_items(
        self, path: str, decode: Callable[[Any], T], *, params: dict | None = None
    ) -> list[T]:
        return self._get_one(path, lambda doc: _items(doc, decode), params=params)

    def _write_result(
        self, response: httpx.Response, decode: Callable[[Any], T]
    ) -> T | Accepted:
        if response.status_code in _SYNC_STATUSES:
            return decode(_json(response))
        if response.status_code == 202:
            return Accepted(location=response.headers.get("Location"))
        raise self._error(response)

    def _delete_result(self, response: httpx.Response) -> Accepted | None:
        if response.status_code == 200:
            return None
        if response.status_code == 202:
            return Accepted(location=response.headers.get("Location"))
        raise self._error(response)

    def _error(self, response: httpx.Response) -> BrokerError:
        """Decode a failure body; an undecodable body raises `DecodeError`."""
        status = response.status_code
        try:
            doc = response.json()
        except ValueError as exc:
            raise DecodeError(
                f"broker responded {status} with an undecodable error body", status
            ) from exc
        try:
            error = ErrorResponse.from_dict(doc)
        except DecodeError as exc:
            raise DecodeError(
                f"broker responded {status} with a malformed error body: {exc}", status
            ) from exc
        logger.info(
            "broker responded %s to %s %s: %s",
            status,
            response.request.method,
            response.request.url.path,
            error.message,
        )
        return BrokerError(status, error.message, code=error.error or None)


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise DecodeError(
            f"broker responded {response.status_code} with an undecodable body",
            response.status_code,
        ) from exc


def _field_query(template: str, value: str, field: str) -> dict[str, str]:
    """Render a `fieldQuery` parameter; quotes would end the literal early."""
    if "'" in value:
        raise ValidationError(f"{field} must not contain a single quote", [field])
    return {FIELD_QUERY_KEY: template.format(value)}


def _items(doc: Any, decode: Callable[[Any], T]) -> list[T]:
    """Decode a `{"num_items": n, "items": [...]}` collection envelope."""
    if not isinstance(doc, dict) or not isinstance(doc.get("items", []), list):
        raise DecodeError("collection document has no items list")
    return [decode(item) for item in doc.get("items", [])]


def _parameters(doc: Any) -> dict[str, Any]:
    if not isinstance(doc, dict):
        raise DecodeError("parameters document is not a JSON object")
    return doc
