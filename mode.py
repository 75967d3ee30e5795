# mode.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_NAMESPACE = "default"


class NamespaceMode(str, Enum):
    DISABLED = "disabled"
    SINGLE_DESTINATION = "single-destination"
    MIRRORED = "mirrored"


@dataclass(frozen=True)
class NamespaceConfig:
    """Resolved Consul namespace strategy.

    Build it with ``disabled()``, ``single(ns)`` or ``mirrored(prefix)``;
    the constructor rejects combinations that do not belong to the mode.
    """

    mode: NamespaceMode
    destination: str = ""
    prefix: str = ""

    def __post_init__(self) -> None:
        if self.mode == NamespaceMode.SINGLE_DESTINATION:
            if not self.destination or self.prefix:
                raise ValueError("single-destination needs a destination and no prefix")
        elif self.destination:
            raise ValueError(f"{self.mode.value} mode does not take a destination")
        if self.mode == NamespaceMode.DISABLED and self.prefix:
            raise ValueError("disabled mode does not take a prefix")

    @classmethod
    def disabled(cls) -> "NamespaceConfig":
        return cls(NamespaceMode.DISABLED)

    @classmethod
    def single(cls, destination: str) -> "NamespaceConfig":
        return cls(NamespaceMode.SINGLE_DESTINATION, destination=destination)

    @classmethod
    def mirrored(cls, prefix: str = "") -> "NamespaceConfig":
        return cls(NamespaceMode.MIRRORED, prefix=prefix)

    @property
    def enabled(self) -> bool:
        return self.mode != NamespaceMode.DISABLED

    @property
    def mirroring(self) -> bool:
        return self.mode == NamespaceMode.MIRRORED

    @property
    def target_namespace(self) -> str:
        """Consul namespace singleton objects (auth method, binding rule) live in.

        Empty when namespaces are disabled so requests carry no ``ns`` parameter.
        """
        if self.mode == NamespaceMode.SINGLE_DESTINATION:
            return self.destination
        if self.mode == NamespaceMode.MIRRORED:
            return DEFAULT_NAMESPACE
        return ""


def same_namespace(a: str, b: str) -> bool:
    return (a or DEFAULT_NAMESPACE) == (b or DEFAULT_NAMESPACE)


def resolve_namespace_config(
    enabled: bool,
    mirroring: bool = False,
    prefix: str = "",
    destination: str = "",
) -> NamespaceConfig:
    """
    Decide the namespace mode.
    Priority:
      1) namespaces disabled -> DISABLED (mirroring/destination ignored)
      2) mirroring on        -> MIRRORED (destination ignored)
      3) otherwise           -> SINGLE_DESTINATION (empty destination means "default")
    """
    if not enabled:
        return NamespaceConfig.disabled()
    if mirroring:
        return NamespaceConfig.mirrored(prefix or "")
    return NamespaceConfig.single(destination or DEFAULT_NAMESPACE)
