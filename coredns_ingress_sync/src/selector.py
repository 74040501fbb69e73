from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

_FALSE_LIKE = frozenset({"false", "0", "no", "off", "disabled"})


def is_false_like(value: str | None) -> bool:
    """Return True for ``false|0|no|off|disabled`` (case-insensitive, whitespace ignored)."""
    if value is None:
        return False
    return value.strip().lower() in _FALSE_LIKE


def parse_csv(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated setting, dropping blanks and surrounding spaces."""
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class IngressRecord:
    """The slice of a ``networking.k8s.io/v1`` Ingress the selector looks at."""

    namespace: str
    name: str
    ingress_class: str | None = None
    hosts: tuple[str, ...] = ()
    annotations: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_kube(cls, ingress: Any) -> IngressRecord:
        """Build a record from a ``V1Ingress`` (or any object with the same attributes)."""
        metadata = getattr(ingress, "metadata", None)
        spec = getattr(ingress, "spec", None)
        rules = getattr(spec, "rules", None) or []
        hosts = tuple(
            host for host in (getattr(rule, "host", None) for rule in rules) if host
        )
        annotations = getattr(metadata, "annotations", None)
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            ingress_class=getattr(spec, "ingress_class_name", None),
            hosts=hosts,
            annotations=dict(annotations) if isinstance(annotations, dict) else {},
        )


@dataclass(frozen=True)
class FilterPolicy:
    """Which ingresses contribute hostnames.

    Precedence: the deny-list, the exclude-set and the annotation opt-out all
    override allow-list membership.
    """

    ingress_class: str
    watch_namespaces: frozenset[str] = frozenset()
    exclude_namespaces: frozenset[str] = frozenset()
    exclude_names: frozenset[str] = frozenset()
    exclude_qualified: frozenset[tuple[str, str]] = frozenset()
    annotation_enabled_key: str = ""

    @classmethod
    def from_strings(
        cls,
        ingress_class: str,
        watch_namespaces: str = "",
        exclude_namespaces: str = "",
        exclude_ingresses: str = "",
        annotation_enabled_key: str = "",
    ) -> FilterPolicy:
        """Build a policy from the comma-separated forms used in the environment.

        ``exclude_ingresses`` entries are either ``name`` (excluded in every
        namespace) or ``namespace/name``.  Entries with an empty half are
        ignored.
        """
        names: set[str] = set()
        qualified: set[tuple[str, str]] = set()
        for entry in parse_csv(exclude_ingresses):
            if "/" in entry:
                namespace, _, name = entry.partition("/")
                namespace, name = namespace.strip(), name.strip()
                if namespace and name:
                    qualified.add((namespace, name))
            else:
                names.add(entry)

        return cls(
            ingress_class=ingress_class,
            watch_namespaces=frozenset(parse_csv(watch_namespaces)),
            exclude_namespaces=frozenset(parse_csv(exclude_namespaces)),
            exclude_names=frozenset(names),
            exclude_qualified=frozenset(qualified),
            annotation_enabled_key=annotation_enabled_key,
        )

    @property
    def watches_all_namespaces(self) -> bool:
        return not self.watch_namespaces

    def allows_namespace(self, namespace: str) -> bool:
        if namespace in self.exclude_namespaces:
            return False
        return self.watches_all_namespaces or namespace in self.watch_namespaces

    def is_excluded(self, record: IngressRecord) -> bool:
        return (
            record.name in self.exclude_names
            or (record.namespace, record.name) in self.exclude_qualified
        )

    def is_opted_out(self, record: IngressRecord) -> bool:
        if not self.annotation_enabled_key:
            return False
        return is_false_like(record.annotations.get(self.annotation_enabled_key))

    def admits(self, record: IngressRecord) -> bool:
        return (
            record.ingress_class == self.ingress_class
            and self.allows_namespace(record.namespace)
            and not self.is_excluded(record)
            and not self.is_opted_out(record)
        )


def select_hostnames(records: Iterable[IngressRecord], policy: FilterPolicy) -> frozenset[str]:
    """Return the deduplicated rule hosts of every record the policy admits."""
    hosts: set[str] = set()
    for record in records:
        if policy.admits(record):
            hosts.update(host for host in record.hosts if host)
    return frozenset(hosts)
