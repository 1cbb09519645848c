from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import requests
import requests.auth

from shelly_cache import StatusCache
from shelly_discovery import Generation, Target

logger = logging.getLogger("shelly_plug_exporter.prober")

DeviceConfig = Dict[str, Any]

CONFIG_DOCUMENT = "config"
PHASES = ("A", "B", "C")


class ShellyError(Exception):
    pass


class TransportError(ShellyError):
    pass


class DecodeError(ShellyError):
    pass


class PassCancelled(ShellyError):
    pass


class Transport:
    def __init__(
        self,
        timeout_seconds: float,
        auth_username: Optional[str] = None,
        auth_password: Optional[str] = None,
        scheme: str = "http",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self.auth_username = auth_username
        self.auth_password = auth_password
        self.scheme = scheme
        self.session = session or requests.Session()

    def _auth(self, generation: Optional[Generation]) -> Optional[requests.auth.AuthBase]:
        if not self.auth_username:
            return None
        password = self.auth_password or ""
        if generation is Generation.GEN1:
            return requests.auth.HTTPBasicAuth(self.auth_username, password)
        return requests.auth.HTTPDigestAuth(self.auth_username, password)

    def get(self, address: str, path: str, generation: Optional[Generation] = None) -> bytes:
        url = f"{self.scheme}://{address}/{path.lstrip('/')}"
        logger.debug("fetch url=%s", url)
        try:
            response = self.session.get(url, timeout=self.timeout_seconds, auth=self._auth(generation))
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"GET {url}: {e}") from e
        return response.content

    def do(self, target: Target, path: str) -> bytes:
        return self.get(target.address, path, target.generation)

    def close(self) -> None:
        self.session.close()


def decode_document(raw: bytes, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise DecodeError(f"{what}: invalid json: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError(f"{what}: expected object, got {type(data).__name__}")
    return data


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _field(doc: Mapping[str, Any], name: str, what: str) -> Any:
    if name not in doc:
        raise DecodeError(f"{what}: missing field '{name}'")
    return doc[name]


def _number(doc: Mapping[str, Any], name: str, what: str) -> float:
    v = _field(doc, name, what)
    if not _is_number(v):
        raise DecodeError(f"{what}: field '{name}' must be a number, got {v!r}")
    return float(v)


def _opt_number(doc: Mapping[str, Any], name: str, what: str) -> Optional[float]:
    v = doc.get(name)
    if v is None:
        return None
    if not _is_number(v):
        raise DecodeError(f"{what}: field '{name}' must be a number, got {v!r}")
    return float(v)


def _boolean(doc: Mapping[str, Any], name: str, what: str) -> bool:
    v = _field(doc, name, what)
    if not isinstance(v, bool):
        raise DecodeError(f"{what}: field '{name}' must be a boolean, got {v!r}")
    return v


def _string(doc: Mapping[str, Any], name: str, what: str, default: Optional[str] = None) -> str:
    if default is None:
        v = _field(doc, name, what)
    else:
        v = doc.get(name)
        if v is None:
            return default
    if not isinstance(v, str):
        raise DecodeError(f"{what}: field '{name}' must be a string, got {v!r}")
    return v


def _object(doc: Mapping[str, Any], name: str, what: str) -> Mapping[str, Any]:
    v = _field(doc, name, what)
    if not isinstance(v, Mapping):
        raise DecodeError(f"{what}: field '{name}' must be an object, got {v!r}")
    return v


def _list(doc: Mapping[str, Any], name: str, what: str) -> List[Any]:
    v = doc.get(name, [])
    if not isinstance(v, list):
        raise DecodeError(f"{what}: field '{name}' must be a list, got {v!r}")
    return v


@dataclass
class SystemStatus:
    unixtime: Optional[float]
    uptime: float
    ram_size: float
    ram_free: float
    fs_size: float
    fs_free: float
    restart_required: Optional[bool]


@dataclass
class WifiStatus:
    ssid: str
    rssi: float


@dataclass
class SwitchStatus:
    output: bool
    source: str
    apower: Optional[float] = None
    current: Optional[float] = None


@dataclass
class PhaseStatus:
    current: float
    apparent_power: float
    active_power: float
    power_factor: float
    frequency: Optional[float]
    voltage: float


@dataclass
class EnergyMeterTotal:
    current: float
    active_power: float


@dataclass
class EnergyMeterStatus:
    phases: Dict[str, PhaseStatus]
    total: EnergyMeterTotal


@dataclass
class TemperatureStatus:
    tc: float


class ProtocolAdapter:
    generation: Generation

    def __init__(
        self,
        target: Target,
        transport: Transport,
        cache: StatusCache,
        config_ttl: float = 60.0,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.target = target
        self.transport = transport
        self.cache = cache
        self.config_ttl = config_ttl
        self.cancelled = cancelled or (lambda: False)

    def _request(self, path: str, what: str) -> Dict[str, Any]:
        if self.cancelled():
            raise PassCancelled(f"{what}: pass cancelled")
        raw = self.transport.do(self.target, path)
        return decode_document(raw, what)

    def fetch_config(self) -> DeviceConfig:
        key = StatusCache.key(self.target.address, CONFIG_DOCUMENT)
        return self.cache.get_or_load(key, self.config_ttl, self._load_config)

    def _load_config(self) -> DeviceConfig:
        raise NotImplementedError

    def fetch_system_status(self) -> SystemStatus:
        raise NotImplementedError

    def fetch_wifi_status(self) -> WifiStatus:
        raise NotImplementedError

    def fetch_switch_status(self, cid: int) -> SwitchStatus:
        raise NotImplementedError

    def fetch_energy_meter_status(self, cid: int) -> EnergyMeterStatus:
        raise NotImplementedError

    def fetch_temperature_status(self, cid: int) -> TemperatureStatus:
        raise NotImplementedError


class Gen2Adapter(ProtocolAdapter):
    """Shelly Gen2+ RPC api (rpc/<Component>.<Method>)."""

    generation = Generation.GEN2

    def _load_config(self) -> DeviceConfig:
        return self._request("rpc/Shelly.GetConfig", "Shelly.GetConfig")

    def fetch_system_status(self) -> SystemStatus:
        what = "Sys.GetStatus"
        doc = self._request("rpc/Sys.GetStatus", what)
        return SystemStatus(
            unixtime=_opt_number(doc, "unixtime", what),
            uptime=_number(doc, "uptime", what),
            ram_size=_number(doc, "ram_size", what),
            ram_free=_number(doc, "ram_free", what),
            fs_size=_number(doc, "fs_size", what),
            fs_free=_number(doc, "fs_free", what),
            restart_required=_boolean(doc, "restart_required", what),
        )

    def fetch_wifi_status(self) -> WifiStatus:
        what = "Wifi.GetStatus"
        doc = self._request("rpc/Wifi.GetStatus", what)
        return WifiStatus(ssid=_string(doc, "ssid", what), rssi=_number(doc, "rssi", what))

    def fetch_switch_status(self, cid: int) -> SwitchStatus:
        what = f"Switch.GetStatus id={cid}"
        doc = self._request(f"rpc/Switch.GetStatus?id={cid}", what)
        return SwitchStatus(
            output=_boolean(doc, "output", what),
            source=_string(doc, "source", what),
            apower=_opt_number(doc, "apower", what),
            current=_opt_number(doc, "current", what),
        )

    def fetch_energy_meter_status(self, cid: int) -> EnergyMeterStatus:
        what = f"EM.GetStatus id={cid}"
        doc = self._request(f"rpc/EM.GetStatus?id={cid}", what)
        phases: Dict[str, PhaseStatus] = {}
        for phase in PHASES:
            p = phase.lower()
            phases[phase] = PhaseStatus(
                current=_number(doc, f"{p}_current", what),
                apparent_power=_number(doc, f"{p}_aprt_power", what),
                active_power=_number(doc, f"{p}_act_power", what),
                power_factor=_number(doc, f"{p}_pf", what),
                frequency=_number(doc, f"{p}_freq", what),
                voltage=_number(doc, f"{p}_voltage", what),
            )
        total = EnergyMeterTotal(
            current=_number(doc, "total_current", what),
            active_power=_number(doc, "total_act_power", what),
        )
        return EnergyMeterStatus(phases=phases, total=total)

    def fetch_temperature_status(self, cid: int) -> TemperatureStatus:
        what = f"Temperature.GetStatus id={cid}"
        doc = self._request(f"rpc/Temperature.GetStatus?id={cid}", what)
        return TemperatureStatus(tc=_number(doc, "tC", what))


class Gen1Adapter(ProtocolAdapter):
    """Shelly Gen1 REST api (settings + status documents).

    Gen1 has no per-component config, so the component layout is derived from
    the settings document and every status record is cut from one status
    document.
    """

    generation = Generation.GEN1

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._status: Optional[Dict[str, Any]] = None

    def _status_document(self) -> Dict[str, Any]:
        if self._status is None:
            self._status = self._request("status", "status")
        return self._status

    def _load_config(self) -> DeviceConfig:
        what = "settings"
        settings = self._request("settings", what)
        device_name = settings.get("name") or ""

        cfg: DeviceConfig = {}
        for i, relay in enumerate(_list(settings, "relays", what)):
            name = relay.get("name") if isinstance(relay, Mapping) else None
            cfg[f"switch:{i}"] = {"id": i, "name": name or device_name}

        if len(_list(settings, "emeters", what)) >= len(PHASES):
            cfg["em:0"] = {"id": 0, "name": device_name}

        status = self._status_document()
        if isinstance(status.get("tmp"), Mapping):
            cfg["temperature:0"] = {"id": 0, "name": device_name}
        return cfg

    def fetch_system_status(self) -> SystemStatus:
        what = "status"
        doc = self._status_document()
        return SystemStatus(
            unixtime=_opt_number(doc, "unixtime", what),
            uptime=_number(doc, "uptime", what),
            ram_size=_number(doc, "ram_total", what),
            ram_free=_number(doc, "ram_free", what),
            fs_size=_number(doc, "fs_size", what),
            fs_free=_number(doc, "fs_free", what),
            restart_required=None,
        )

    def fetch_wifi_status(self) -> WifiStatus:
        what = "status.wifi_sta"
        sta = _object(self._status_document(), "wifi_sta", what)
        return WifiStatus(ssid=_string(sta, "ssid", what), rssi=_number(sta, "rssi", what))

    def _indexed(self, doc: Mapping[str, Any], name: str, cid: int, what: str) -> Mapping[str, Any]:
        items = _list(doc, name, what)
        if cid < 0 or cid >= len(items) or not isinstance(items[cid], Mapping):
            raise DecodeError(f"{what}: no '{name}' entry for id {cid}")
        return items[cid]

    def fetch_switch_status(self, cid: int) -> SwitchStatus:
        what = f"status.relays id={cid}"
        doc = self._status_document()
        relay = self._indexed(doc, "relays", cid, what)
        meters = _list(doc, "meters", what)
        meter = meters[cid] if cid < len(meters) and isinstance(meters[cid], Mapping) else {}
        return SwitchStatus(
            output=_boolean(relay, "ison", what),
            source=_string(relay, "source", what, default="unknown"),
            apower=_number(meter, "power", what) if meter else None,
            current=_opt_number(meter, "current", what) if meter else None,
        )

    def fetch_energy_meter_status(self, cid: int) -> EnergyMeterStatus:
        what = f"status.emeters id={cid}"
        doc = self._status_document()
        phases: Dict[str, PhaseStatus] = {}
        total_current = 0.0
        total_power = 0.0
        for idx, phase in enumerate(PHASES):
            em = self._indexed(doc, "emeters", cid * len(PHASES) + idx, what)
            current = _number(em, "current", what)
            power = _number(em, "power", what)
            voltage = _number(em, "voltage", what)
            phases[phase] = PhaseStatus(
                current=current,
                apparent_power=voltage * current,
                active_power=power,
                power_factor=_number(em, "pf", what),
                frequency=_opt_number(em, "freq", what),
                voltage=voltage,
            )
            total_current += current
            total_power += power
        return EnergyMeterStatus(phases=phases, total=EnergyMeterTotal(current=total_current, active_power=total_power))

    def fetch_temperature_status(self, cid: int) -> TemperatureStatus:
        what = f"status.tmp id={cid}"
        if cid != 0:
            raise DecodeError(f"{what}: gen1 devices expose a single temperature sensor")
        tmp = _object(self._status_document(), "tmp", what)
        return TemperatureStatus(tc=_number(tmp, "tC", what))


ADAPTERS = {
    Generation.GEN1: Gen1Adapter,
    Generation.GEN2: Gen2Adapter,
}


def adapter_for(target: Target, transport: Transport, cache: StatusCache, **kwargs: Any) -> ProtocolAdapter:
    return ADAPTERS[target.generation](target, transport, cache, **kwargs)


def detect_generation(transport: Transport, address: str) -> Tuple[Generation, str]:
    doc = decode_document(transport.get(address, "shelly"), "shelly")
    if "gen" in doc:
        try:
            generation = Generation.parse(doc["gen"])
        except ValueError as e:
            raise DecodeError(f"shelly: {e}") from e
        return generation, str(doc.get("model", ""))
    return Generation.GEN1, str(doc.get("type", ""))
