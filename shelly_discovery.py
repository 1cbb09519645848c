from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger("shelly_plug_exporter.discovery")


class Generation(Enum):
    GEN1 = 1
    GEN2 = 2

    @classmethod
    def parse(cls, raw: Any) -> "Generation":
        if isinstance(raw, Generation):
            return raw
        s = str(raw).strip().lower()
        if s.startswith("gen"):
            s = s[3:]
        if s == "1":
            return cls.GEN1
        # gen3/gen4 devices speak the gen2 rpc api
        if s.isdigit() and int(s) >= 2:
            return cls.GEN2
        raise ValueError(f"unknown device generation: {raw!r}")

    @property
    def label(self) -> str:
        return f"gen{self.value}"


class TargetHealth(Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class Target:
    address: str
    generation: Optional[Generation] = None
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or f"plug-{self.address}"


class ComponentKind(Enum):
    SWITCH = "switch"
    EM = "em"
    TEMPERATURE = "temperature"

    @property
    def prefix(self) -> str:
        return f"{self.value}:"


@dataclass(frozen=True)
class ComponentItem:
    kind: ComponentKind
    id: int
    name: str

    @property
    def label_id(self) -> str:
        if self.kind is ComponentKind.TEMPERATURE:
            return f"sensor:{self.id}"
        return f"{self.kind.value}:{self.id}"


class ComponentDecodeError(ValueError):
    pass


def classify_key(key: str) -> Optional[ComponentKind]:
    for kind in ComponentKind:
        if key.startswith(kind.prefix):
            return kind
    return None


def decode_component_item(kind: ComponentKind, raw: Any) -> ComponentItem:
    if not isinstance(raw, Mapping):
        raise ComponentDecodeError(f"{kind.value}: config record is {type(raw).__name__}, expected object")

    cid = raw.get("id")
    if isinstance(cid, bool) or not isinstance(cid, int):
        raise ComponentDecodeError(f"{kind.value}: field 'id' must be an integer, got {cid!r}")

    name = raw.get("name")
    # unnamed components report null
    if name is None:
        name = ""
    if not isinstance(name, str):
        raise ComponentDecodeError(f"{kind.value}: field 'name' must be a string, got {name!r}")

    return ComponentItem(kind=kind, id=cid, name=name)


def discover_components(device_config: Mapping[str, Any], address: str = "") -> Iterator[ComponentItem]:
    for key, value in device_config.items():
        kind = classify_key(str(key))
        if kind is None:
            continue
        try:
            yield decode_component_item(kind, value)
        except ComponentDecodeError as e:
            logger.error("target=%s component=%s failed to decode config: %s", address, key, e)


class HealthTracker(Protocol):
    def mark_target(self, address: str, status: TargetHealth) -> None:
        ...


class HealthReporter:
    def __init__(self, tracker: Optional[HealthTracker]) -> None:
        self.tracker = tracker

    def mark_unhealthy(self, address: str) -> None:
        if self.tracker is None:
            return
        self.tracker.mark_target(address, TargetHealth.UNHEALTHY)


class StaticDiscovery:
    """Target registry backed by the config file.

    Owns per-target health. The collector only ever reports failures to it
    through HealthReporter; recovery is driven by mark_healthy.
    """

    def __init__(self, targets: List[Target]) -> None:
        self._targets = list(targets)
        self.lock = Lock()
        self.health: Dict[str, TargetHealth] = {t.address: TargetHealth.HEALTHY for t in self._targets}

    def targets(self) -> List[Target]:
        with self.lock:
            return list(self._targets)

    def replace_target(self, target: Target) -> None:
        with self.lock:
            self._targets = [target if t.address == target.address else t for t in self._targets]

    def mark_target(self, address: str, status: TargetHealth) -> None:
        with self.lock:
            prev = self.health.get(address)
            self.health[address] = status
        if prev is not status:
            logger.info("target=%s health=%s previous=%s", address, status.value, prev.value if prev else "unknown")

    def mark_healthy(self, address: str) -> None:
        self.mark_target(address, TargetHealth.HEALTHY)

    def health_of(self, address: str) -> Optional[TargetHealth]:
        with self.lock:
            return self.health.get(address)

    def snapshot(self) -> List[Tuple[Target, TargetHealth]]:
        with self.lock:
            return [(t, self.health.get(t.address, TargetHealth.HEALTHY)) for t in self._targets]
