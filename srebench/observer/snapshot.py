"""Immutable point-in-time captures of the cluster state a scenario cares about."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from srebench.utils.jsonpath import get_path

OK = "ok"
UNKNOWN = "unknown"


def freeze(value):
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, set):
        return tuple(sorted(freeze(v) for v in value))
    return value


def thaw(value):
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ObservedField:
    status: str
    value: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, value) -> "ObservedField":
        return cls(OK, freeze(value))

    @classmethod
    def unknown(cls, error: str) -> "ObservedField":
        return cls(UNKNOWN, None, error)

    @property
    def known(self) -> bool:
        return self.status == OK

    def to_dict(self) -> dict:
        out = {"status": self.status, "value": thaw(self.value)}
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class Snapshot:
    taken_at: float
    label: str | None = None
    fields: Mapping[str, ObservedField] = field(default_factory=lambda: MappingProxyType({}))
    duration: float = 0.0

    def __post_init__(self):
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def __getitem__(self, name: str) -> ObservedField:
        return self.fields[name]

    def __contains__(self, name: str) -> bool:
        return name in self.fields

    def value(self, name: str, path: str | None = None, default=None):
        observed = self.fields.get(name)
        if observed is None or not observed.known:
            return default
        if not path:
            return observed.value
        return get_path(observed.value, path, default)

    @property
    def unknown(self) -> list[str]:
        return sorted(name for name, f in self.fields.items() if not f.known)

    def to_dict(self) -> dict:
        return {
            "takenAt": round(self.taken_at, 3),
            "label": self.label,
            "duration": round(self.duration, 3),
            "fields": {name: self.fields[name].to_dict() for name in sorted(self.fields)},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Snapshot":
        fields = {
            name: ObservedField(f["status"], freeze(f.get("value")), f.get("error"))
            for name, f in (data.get("fields") or {}).items()
        }
        return cls(
            taken_at=data.get("takenAt", 0.0),
            label=data.get("label"),
            fields=fields,
            duration=data.get("duration", 0.0),
        )
