"""Shared pytest fixtures."""

import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from shelly_cache import StatusCache
from shelly_discovery import Generation, Target
from shelly_prober import TransportError


class FakeTransport:
    """Serves canned device responses keyed by request path."""

    def __init__(self, routes: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        # address -> path -> payload (dict, bytes or exception)
        self.routes: Dict[str, Dict[str, Any]] = routes or {}
        self.calls: List[Tuple[str, str]] = []

    def add(self, address: str, path: str, payload: Any) -> None:
        self.routes.setdefault(address, {})[path] = payload

    def get(self, address: str, path: str, generation: Optional[Generation] = None) -> bytes:
        self.calls.append((address, path))
        payload = self.routes.get(address, {}).get(path)
        if payload is None:
            raise TransportError(f"GET http://{address}/{path}: connection refused")
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, bytes):
            return payload
        return json.dumps(payload).encode()

    def do(self, target: Target, path: str) -> bytes:
        return self.get(target.address, path, target.generation)

    def count(self, address: str, path: str) -> int:
        return sum(1 for c in self.calls if c == (address, path))


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


GEN2_SYS_STATUS = {
    "mac": "A8032ABE54DC",
    "restart_required": False,
    "time": "12:03",
    "unixtime": 1700000000,
    "uptime": 3600,
    "ram_size": 246000,
    "ram_free": 140000,
    "fs_size": 458752,
    "fs_free": 212992,
    "cfg_rev": 10,
}

GEN2_WIFI_STATUS = {"sta_ip": "192.168.1.21", "status": "got ip", "ssid": "home", "rssi": -58}

GEN2_SWITCH_STATUS = {
    "id": 0,
    "source": "schedule",
    "output": True,
    "apower": 110.0,
    "voltage": 229.8,
    "current": 0.5,
    "aenergy": {"total": 1234.5},
    "temperature": {"tC": 41.2, "tF": 106.2},
}

GEN2_EM_STATUS = {
    "id": 1,
    "a_current": 1.1,
    "a_voltage": 230.1,
    "a_act_power": 200.0,
    "a_aprt_power": 250.0,
    "a_pf": 0.8,
    "a_freq": 50.0,
    "b_current": 2.1,
    "b_voltage": 231.1,
    "b_act_power": 400.0,
    "b_aprt_power": 450.0,
    "b_pf": 0.89,
    "b_freq": 50.0,
    "c_current": 3.1,
    "c_voltage": 232.1,
    "c_act_power": 600.0,
    "c_aprt_power": 700.0,
    "c_pf": 0.86,
    "c_freq": 50.1,
    "n_current": None,
    "total_current": 6.3,
    "total_act_power": 1200.0,
    "total_aprt_power": 1400.0,
}

GEN2_TEMPERATURE_STATUS = {"id": 1, "tC": 21.5, "tF": 70.7}


GEN1_SETTINGS = {
    "device": {"type": "SHPLG-S", "hostname": "shellyplug-s-7A1B2C"},
    "name": "washer",
    "relays": [{"name": None, "ison": True}],
    "emeters": [],
}

GEN1_STATUS = {
    "unixtime": 1700000000,
    "uptime": 7200,
    "ram_total": 51000,
    "ram_free": 39000,
    "fs_size": 233681,
    "fs_free": 166664,
    "wifi_sta": {"connected": True, "ssid": "home", "ip": "192.168.1.22", "rssi": -61},
    "relays": [{"ison": True, "has_timer": False, "overpower": False, "source": "http"}],
    "meters": [{"power": 35.2, "overpower": 0.0, "is_valid": True, "total": 1000}],
    "temperature": 30.1,
    "overtemperature": False,
    "tmp": {"tC": 30.1, "tF": 86.2, "is_valid": True},
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return StatusCache(clock=clock)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def gen2_target():
    return Target(address="192.168.1.21", generation=Generation.GEN2, name="kitchen")


@pytest.fixture
def gen1_target():
    return Target(address="192.168.1.22", generation=Generation.GEN1, name="washer")


@pytest.fixture
def gen2_device(transport, gen2_target):
    """Gen2 plug with one switch and one 3-phase energy meter."""
    address = gen2_target.address
    transport.add(address, "rpc/Shelly.GetConfig", {
        "sys": {"device": {"name": "kitchen"}},
        "wifi": {"sta": {"ssid": "home"}},
        "switch:0": {"id": 0, "name": "kettle", "in_mode": "follow"},
        "em:1": {"id": 1, "name": "meter"},
    })
    transport.add(address, "rpc/Sys.GetStatus", dict(GEN2_SYS_STATUS))
    transport.add(address, "rpc/Wifi.GetStatus", dict(GEN2_WIFI_STATUS))
    transport.add(address, "rpc/Switch.GetStatus?id=0", dict(GEN2_SWITCH_STATUS))
    transport.add(address, "rpc/EM.GetStatus?id=1", dict(GEN2_EM_STATUS))
    return transport
