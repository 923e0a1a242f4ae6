"""Authentication helpers for the Service Manager broker.

This module turns a tenant's credential secret into a `BrokerSession`: an
immutable pairing of the broker URL with an HTTP client whose requests carry
an OAuth2 client-credentials bearer token. The token is fetched on first use
and refreshed transparently when it expires or the broker rejects it.

A session is bound to exactly one tenant. Switching tenants means resolving
a new session, never mutating an existing one.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Generator

import httpx
from kubernetes.client import V1Secret

from smops.core.config import Settings
from smops.core.errors import (
    AuthError,
    MalformedSecretError,
    NotFoundError,
    TransportError,
)
from smops.core.objects import NamespacedProvider

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "clientid"
CLIENT_SECRET_KEY = "clientsecret"
URL_KEY = "sm_url"
TOKEN_URL_KEY = "tokenurl"
TOKEN_URL_SUFFIX_KEY = "tokenurlsuffix"

_REQUIRED_KEYS = (CLIENT_ID_KEY, CLIENT_SECRET_KEY, URL_KEY, TOKEN_URL_KEY)


@dataclass(frozen=True)
class SMCredentials:
    """Client credentials of one broker tenant, decoded from its secret."""

    client_id: str
    client_secret: str = field(repr=False)
    url: str
    token_url: str
    token_url_suffix: str = ""

    @property
    def token_endpoint(self) -> str:
        return self.token_url + self.token_url_suffix


def _sanitize_url(url: str) -> str:
    """
    Normalize a broker URL.

    - Removes surrounding whitespace
    - Removes trailing slashes

    Resource paths are appended verbatim, so a trailing slash would produce
    `//v1/...` request paths.
    """
    return url.strip().rstrip("/")


def _decode_secret_data(secret: V1Secret) -> dict[str, str]:
    """Return the secret's values as text, from `data` (base64) or `string_data`."""
    out: dict[str, str] = {}
    for key, value in (secret.data or {}).items():
        if value is None:
            continue
        try:
            out[key] = base64.b64decode(value).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            continue
    for key, value in (secret.string_data or {}).items():
        out.setdefault(key, value)
    return out


def credentials_from_secret(secret: V1Secret) -> SMCredentials:
    """
    Decode tenant credentials from a secret.

    Raises:
        MalformedSecretError: If any of `clientid`, `clientsecret`, `sm_url`
            or `tokenurl` is missing or empty. `tokenurlsuffix` is optional.
    """
    data = _decode_secret_data(secret)
    missing = [key for key in _REQUIRED_KEYS if not data.get(key, "").strip()]
    if missing:
        raise MalformedSecretError(
            secret.metadata.name, secret.metadata.namespace, missing
        )
    return SMCredentials(
        client_id=data[CLIENT_ID_KEY].strip(),
        client_secret=data[CLIENT_SECRET_KEY].strip(),
        url=_sanitize_url(data[URL_KEY]),
        token_url=data[TOKEN_URL_KEY].strip(),
        token_url_suffix=data.get(TOKEN_URL_SUFFIX_KEY, "").strip(),
    )


def build_http_client(
    settings: Settings,
    *,
    auth: httpx.Auth | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Return an HTTP client with bounded pooling, keep-alive and timeouts."""
    limits = httpx.Limits(
        max_connections=settings.max_connections,
        max_keepalive_connections=settings.max_connections,
        keepalive_expiry=settings.idle_timeout,
    )
    return httpx.Client(
        auth=auth,
        transport=transport,
        limits=limits,
        timeout=httpx.Timeout(settings.request_timeout, connect=settings.dial_timeout),
        headers={"Content-Type": "application/json"},
    )


class ClientCredentialsAuth(httpx.Auth):
    """
    OAuth2 client-credentials token source for httpx.

    The token is exchanged on first use and cached until it is within
    `_EXPIRY_LEEWAY_SECONDS` of expiring. A 401 from the broker forces one
    refresh and a single replay of the request. Refreshes are serialized so
    concurrent callers share one token exchange.
    """

    _EXPIRY_LEEWAY_SECONDS = 10.0

    def __init__(
        self,
        credentials: SMCredentials,
        token_http: httpx.Client,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials = credentials
        self._token_http = token_http
        self._clock = clock
        self._lock = threading.Lock()
        self._access_token: str | None = None
        self._expires_at: float | None = None

    def token(self, *, stale: str | None = None) -> str:
        """Return a valid access token, exchanging a new one if needed.

        Args:
            stale: A token the caller saw rejected. It is replaced unless
                another caller already refreshed it.
        """
        with self._lock:
            if self._access_token is None or self._expired() or (
                stale is not None and stale == self._access_token
            ):
                self._exchange()
            return self._access_token

    def auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        token = self.token()
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request
        if response.status_code == 401:
            logger.debug("broker rejected access token, refreshing")
            request.headers["Authorization"] = f"Bearer {self.token(stale=token)}"
            yield request

    def close(self) -> None:
        self._token_http.close()

    def _expired(self) -> bool:
        if self._expires_at is None:
            return False
        return self._clock() >= self._expires_at - self._EXPIRY_LEEWAY_SECONDS

    def _exchange(self) -> None:
        endpoint = self._credentials.token_endpoint
        try:
            response = self._token_http.post(
                endpoint,
                data={"grant_type": "client_credentials"},
                auth=(self._credentials.client_id, self._credentials.client_secret),
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )
        except httpx.RequestError as exc:
            raise TransportError(f"token endpoint {endpoint} unreachable: {exc}") from exc

        if response.status_code != 200:
            raise AuthError(
                f"token request to {endpoint} failed with status {response.status_code}",
                status=response.status_code,
            )
        try:
            doc = response.json()
            access_token = doc["access_token"]
            expires_in = float(doc.get("expires_in") or 0)
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthError(
                f"token response from {endpoint} is malformed",
                status=response.status_code,
            ) from exc
        if not isinstance(access_token, str) or not access_token:
            raise AuthError(
                f"token response from {endpoint} has no access token",
                status=response.status_code,
            )

        self._access_token = access_token
        self._expires_at = self._clock() + expires_in if expires_in > 0 else None
        logger.debug("obtained access token for client %s", self._credentials.client_id)


@dataclass(frozen=True)
class BrokerSession:
    """
    Per-tenant broker context.

    Attributes:
        url: Base URL of the broker, without trailing slash.
        secret_name: Name of the credential secret the session was built from.
        secret_namespace: Namespace of that secret.
        http: Client that authenticates every request for this tenant.
        auth: The token source attached to `http`.
    """

    url: str
    secret_name: str
    secret_namespace: str
    http: httpx.Client = field(repr=False, compare=False)
    auth: ClientCredentialsAuth = field(repr=False, compare=False)

    def close(self) -> None:
        self.http.close()
        self.auth.close()

    def __enter__(self) -> "BrokerSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class AuthManager:
    """Resolves credential secrets into broker sessions."""

    def __init__(
        self,
        provider: NamespacedProvider[V1Secret],
        settings: Settings | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings or Settings()
        self._transport = transport

    def resolve(self, secret_name: str, secret_namespace: str) -> BrokerSession:
        """
        Build a session for the tenant described by the given secret.

        Raises:
            NotFoundError: If the secret does not exist.
            MalformedSecretError: If the secret lacks required keys.
        """
        try:
            secret = self.provider.get(secret_name, secret_namespace)
        except NotFoundError:
            logger.warning(
                "secret not found: name=%s namespace=%s", secret_name, secret_namespace
            )
            raise
        credentials = credentials_from_secret(secret)
        return self.session_for(credentials, secret_name, secret_namespace)

    def session_for(
        self, credentials: SMCredentials, secret_name: str, secret_namespace: str
    ) -> BrokerSession:
        """Build a session from already decoded credentials."""
        token_http = build_http_client(self.settings, transport=self._transport)
        auth = ClientCredentialsAuth(credentials, token_http)
        http = build_http_client(self.settings, auth=auth, transport=self._transport)
        logger.info(
            "built broker session for %s/%s (%s)",
            secret_namespace,
            secret_name,
            credentials.url,
        )
        return BrokerSession(
            url=credentials.url,
            secret_name=secret_name,
            secret_namespace=secret_namespace,
            http=http,
            auth=auth,
        )

    def defaults(self) -> BrokerSession | None:
        """
        Resolve the default tenant configured in settings.

        A missing default secret is not fatal: it is logged and None is
        returned, so the process can start before the secret is provisioned.
        Every other failure is raised.
        """
        name = self.settings.default_secret
        namespace = self.settings.default_namespace
        try:
            return self.resolve(name, namespace)
        except NotFoundError:
            logger.warning("%s secret not found in %s namespace", name, namespace)
            return None
        except Exception:
            logger.error("failed to build broker session from %s/%s", namespace, name)
            raise
