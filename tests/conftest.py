from __future__ import annotations

import base64
import json
import sys
import uuid
from pathlib import Path

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import httpx  # noqa: E402
import pytest  # noqa: E402
from kubernetes.client import V1ObjectMeta, V1Secret, V1SecretList  # noqa: E402
from kubernetes.client.exceptions import ApiException  # noqa: E402

from smops.core.adapters.kubesecrets import KubernetesSecretProvider  # noqa: E402
from smops.core.adapters.servicemanager import ServiceManagerClient  # noqa: E402
from smops.core.auth import AuthManager  # noqa: E402
from smops.core.bindings import BindingLifecycle  # noqa: E402
from smops.core.config import Settings  # noqa: E402
from smops.core.secrets import CredentialStore  # noqa: E402

BROKER_URL = "https://service-manager.example.com"
TOKEN_URL = "https://auth.example.com"
TOKEN_URL_SUFFIX = "/oauth/token"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-client-secret"

OFFERING_ID = "fc26622b-aeb2-4f3c-95da-8eb337a26883"
PLAN_ID = "4036790e-5ef3-4cf7-bb16-476053477a9a"
OTHER_PLAN_ID = "61772d29-2a16-4ae5-a6b9-b3b0d0cb8bd8"
INSTANCE_ID = "a7e240d6-e348-4fc0-a54c-7b7bfe9b9da6"
BINDING_ID = "550e8400-e29b-41d4-a716-446655440003"


def encode(values: dict[str, str]) -> dict[str, str]:
    return {k: base64.b64encode(v.encode()).decode() for k, v in values.items()}


def decode(data: dict[str, str]) -> dict[str, str]:
    return {k: base64.b64decode(v).decode() for k, v in (data or {}).items()}


def credential_secret(name: str, namespace: str, **overrides: str) -> V1Secret:
    values = {
        "clientid": CLIENT_ID,
        "clientsecret": CLIENT_SECRET,
        "sm_url": BROKER_URL + "/",
        "tokenurl": TOKEN_URL,
        "tokenurlsuffix": TOKEN_URL_SUFFIX,
    }
    values.update(overrides)
    values = {k: v for k, v in values.items() if v is not None}
    return V1Secret(
        metadata=V1ObjectMeta(name=name, namespace=namespace), data=encode(values)
    )


class FakeCoreV1Api:
    """In-memory stand-in for `kubernetes.client.CoreV1Api` secrets calls."""

    def __init__(self) -> None:
        self.secrets: dict[tuple[str, str], V1Secret] = {}
        self.writes: list[tuple[str, str, str]] = []

    def read_namespaced_secret(self, name: str, namespace: str) -> V1Secret:
        try:
            return self.secrets[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def create_namespaced_secret(self, namespace: str, body: V1Secret) -> V1Secret:
        key = (namespace, body.metadata.name)
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[key] = body
        self.writes.append(("create", namespace, body.metadata.name))
        return body

    def delete_namespaced_secret(self, name: str, namespace: str) -> None:
        if self.secrets.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")
        self.writes.append(("delete", namespace, name))

    def list_namespaced_secret(
        self, namespace: str, label_selector: str | None = None
    ) -> V1SecretList:
        return V1SecretList(
            items=[
                s
                for (ns, _), s in self.secrets.items()
                if ns == namespace and self._selected(s, label_selector)
            ]
        )

    def list_secret_for_all_namespaces(
        self, label_selector: str | None = None
    ) -> V1SecretList:
        return V1SecretList(
            items=[s for s in self.secrets.values() if self._selected(s, label_selector)]
        )

    @staticmethod
    def _selected(secret: V1Secret, selector: str | None) -> bool:
        if not selector:
            return True
        labels = secret.metadata.labels or {}
        wanted = dict(part.split("=", 1) for part in selector.split(","))
        return all(labels.get(k) == v for k, v in wanted.items())


class FakeBroker:
    """In-memory Service Manager plus token endpoint, served over MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_requests = 0
        self.valid_tokens: set[str] = set()
        self.expires_in = 3600
        self.fail_status: int | None = None
        self.fail_body: bytes | None = None
        self.accept_writes = False

        self.offerings = {
            OFFERING_ID: {
                "id": OFFERING_ID,
                "name": "service1",
                "description": "First service",
                "catalog_name": "service1",
                "broker_id": "broker-1",
                "bindable": True,
                "metadata": {"displayName": "Service One"},
            }
        }
        self.plans = {
            PLAN_ID: {
                "id": PLAN_ID,
                "name": "service1-plan2",
                "catalog_name": "plan2",
                "service_offering_id": OFFERING_ID,
                "free": True,
            },
            OTHER_PLAN_ID: {
                "id": OTHER_PLAN_ID,
                "name": "service2-plan1",
                "service_offering_id": "another-offering",
            },
        }
        self.instances = {
            INSTANCE_ID: {
                "id": INSTANCE_ID,
                "name": "instance-1",
                "service_plan_id": PLAN_ID,
                "ready": True,
                "labels": {"_clusterid": ["cluster-1"]},
                "context": {
                    "namespace": "kyma-system",
                    "subaccount_id": "subaccount-1",
                },
                "parameters": {"param1": "value1"},
            }
        }
        self.bindings = {
            BINDING_ID: {
                "id": BINDING_ID,
                "name": "binding-3",
                "service_instance_id": INSTANCE_ID,
                "credentials": {"username": "user", "password": "pass"},
                "parameters": {"scope": "read"},
            }
        }

    @property
    def broker_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host != httpx.URL(TOKEN_URL).host]

    def revoke_tokens(self) -> None:
        self.valid_tokens.clear()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == httpx.URL(TOKEN_URL).host:
            return self._token(request)

        auth = request.headers.get("Authorization", "")
        if auth.removeprefix("Bearer ") not in self.valid_tokens:
            return self._error(401, "Unauthorized", "invalid token")
        if self.fail_status is not None:
            if self.fail_body is not None:
                return httpx.Response(self.fail_status, content=self.fail_body)
            return self._error(self.fail_status, "Failure", "requested failure")

        parts = request.url.path.strip("/").split("/")[1:]
        collection, rest = parts[0], parts[1:]
        method = request.method
        if collection == "service_offerings":
            return self._read(self.offerings, rest)
        if collection == "service_plans":
            return self._read(self.plans, rest, request, "service_offering_id")
        if collection == "service_instances":
            if method == "POST":
                return self._create(self.instances, request)
            if method == "PATCH":
                return self._patch(self.instances, rest[0], request)
            if method == "DELETE":
                return self._delete(self.instances, rest[0])
            return self._read(self.instances, rest)
        if collection == "service_bindings":
            if method == "POST":
                return self._create(self.bindings, request, credentials=True)
            if method == "DELETE":
                return self._delete(self.bindings, rest[0])
            return self._read(self.bindings, rest, request, "service_instance_id")
        return self._error(404, "NotFound", "unknown path")

    def _token(self, request: httpx.Request) -> httpx.Response:
        expected = "Basic " + base64.b64encode(
            f"{CLIENT_ID}:{CLIENT_SECRET}".encode()
        ).decode()
        if request.headers.get("Authorization") != expected:
            return httpx.Response(401, json={"error": "invalid_client"})
        if b"grant_type=client_credentials" not in request.content:
            return httpx.Response(400, json={"error": "unsupported_grant_type"})
        self.token_requests += 1
        token = f"token-{self.token_requests}"
        self.valid_tokens.add(token)
        return httpx.Response(
            200,
            json={"access_token": token, "token_type": "bearer", "expires_in": self.expires_in},
        )

    def _read(self, store, rest, request=None, filter_field=None) -> httpx.Response:
        if not rest:
            items = list(store.values())
            query = request.url.params.get("fieldQuery") if request else None
            if query:
                field, _, value = query.partition(" eq ")
                assert field == filter_field
                items = [i for i in items if i.get(field) == value.strip("'")]
            return httpx.Response(200, json={"num_items": len(items), "items": items})
        item = store.get(rest[0])
        if item is None:
            return self._error(404, "NotFound", f"could not find {rest[0]}")
        if rest[1:] == ["parameters"]:
            return httpx.Response(200, json=item.get("parameters") or {})
        return httpx.Response(200, json=item)

    def _create(self, store, request, credentials=False) -> httpx.Response:
        if self.accept_writes:
            return httpx.Response(
                202, headers={"Location": "/v1/service_bindings/new/operations/op-1"}
            )
        doc = json.loads(request.content)
        doc["id"] = str(uuid.uuid4())
        if credentials:
            doc["credentials"] = {
                "username": "generated",
                "password": "secret",
                "uri": {"host": "db.example.com", "port": 5432},
            }
        store[doc["id"]] = doc
        return httpx.Response(201, json=doc)

    def _patch(self, store, item_id, request) -> httpx.Response:
        item = store.get(item_id)
        if item is None:
            return self._error(404, "NotFound", f"could not find {item_id}")
        if self.accept_writes:
            return httpx.Response(202)
        item.update(json.loads(request.content))
        return httpx.Response(200, json=item)

    def _delete(self, store, item_id) -> httpx.Response:
        if store.pop(item_id, None) is None:
            return self._error(404, "NotFound", f"could not find {item_id}")
        if self.accept_writes:
            return httpx.Response(202)
        return httpx.Response(200, json={})

    @staticmethod
    def _error(status: int, error: str, description: str) -> httpx.Response:
        return httpx.Response(status, json={"error": error, "description": description})


@pytest.fixture
def cluster() -> FakeCoreV1Api:
    core = FakeCoreV1Api()
    core.create_namespaced_secret(
        "kyma-system", credential_secret("sap-btp-service-operator", "kyma-system")
    )
    core.writes.clear()
    return core


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def provider(cluster: FakeCoreV1Api) -> KubernetesSecretProvider:
    return KubernetesSecretProvider(cluster)


@pytest.fixture
def auth(provider, broker) -> AuthManager:
    return AuthManager(provider, Settings(), transport=broker.transport())


@pytest.fixture
def client(auth):
    sm = ServiceManagerClient.for_secret(auth, "sap-btp-service-operator", "kyma-system")
    yield sm
    sm.close()


@pytest.fixture
def store(provider) -> CredentialStore:
    return CredentialStore(provider)


@pytest.fixture
def lifecycle(client, store) -> BindingLifecycle:
    return BindingLifecycle(client, store, Settings())
