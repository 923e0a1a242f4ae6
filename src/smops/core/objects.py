"""Object Provider interface: namespaced cluster objects by identity or labels."""

from __future__ import annotations

from typing import Mapping, Protocol, TypeVar

T = TypeVar("T")


class NamespacedProvider(Protocol[T]):
    """Uniform get/list/create/delete over one kind of namespaced object.

    `namespace=None` on list operations means all namespaces. Missing objects
    raise `NotFoundError`; creating over an existing object raises
    `ConflictError`.
    """

    def get(self, name: str, namespace: str) -> T:
        """Return the object stored at `(name, namespace)`."""
        ...

    def get_all(self, namespace: str | None = None) -> list[T]:
        """Return every object, optionally restricted to one namespace."""
        ...

    def get_all_by_labels(
        self, labels: Mapping[str, str], namespace: str | None = None
    ) -> list[T]:
        """Return objects carrying every key/value pair in `labels`."""
        ...

    def create(self, obj: T) -> T:
        """Create `obj` only if nothing occupies its `(name, namespace)`."""
        ...

    def delete(self, obj: T) -> None:
        """Delete `obj`; an object that is already gone is not an error."""
        ...


def label_selector(labels: Mapping[str, str]) -> str:
    """Render an equality-based label selector, e.g. `a=1,b=2`."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))
