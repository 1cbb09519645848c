from __future__ import annotations

import json
import logging
import signal
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field, replace
from pathlib import Path
from socketserver import ThreadingMixIn
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import click
import yaml
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from shelly_cache import StatusCache
from shelly_discovery import (
    ComponentItem,
    ComponentKind,
    Generation,
    HealthReporter,
    StaticDiscovery,
    Target,
    discover_components,
)
from shelly_prober import (
    PHASES,
    PassCancelled,
    ProtocolAdapter,
    ShellyError,
    Transport,
    adapter_for,
    detect_generation,
)

EXPORTER_VERSION = "1.0.0"
METRIC_PREFIX = "shelly_plug_"

logger = logging.getLogger("shelly_plug_exporter")

TARGET_LABELS = ["target", "plug_name"]
COMPONENT_LABELS = TARGET_LABELS + ["id", "name"]


@dataclass(frozen=True)
class MetricFamily:
    name: str
    help: str
    labels: List[str]


FAMILIES: Dict[str, MetricFamily] = {
    f.name: f
    for f in [
        MetricFamily("info", "Shelly plug info (1 for every polled target).", TARGET_LABELS + ["generation"]),
        MetricFamily("sys_unixtime", "Device clock as unix timestamp.", TARGET_LABELS),
        MetricFamily("sys_uptime", "Device uptime in seconds.", TARGET_LABELS),
        MetricFamily("sys_mem_total", "Device memory size in bytes.", TARGET_LABELS),
        MetricFamily("sys_mem_free", "Device free memory in bytes.", TARGET_LABELS),
        MetricFamily("sys_fs_size", "Device filesystem size in bytes.", TARGET_LABELS),
        MetricFamily("sys_fs_free", "Device free filesystem space in bytes.", TARGET_LABELS),
        MetricFamily("sys_restart_required", "Device restart required (1 yes, 0 no).", TARGET_LABELS),
        MetricFamily("wifi_rssi", "Wifi signal strength in dBm.", TARGET_LABELS + ["ssid"]),
        MetricFamily("switch_on", "Switch output state (1 on, 0 off).", COMPONENT_LABELS + ["source"]),
        MetricFamily("power_current", "Current in amps.", COMPONENT_LABELS),
        MetricFamily("power_apparent_current", "Apparent power in VA.", COMPONENT_LABELS),
        MetricFamily("power_total", "Active power in watts.", COMPONENT_LABELS),
        MetricFamily("power_factor", "Power factor.", COMPONENT_LABELS),
        MetricFamily("power_frequency", "Network frequency in Hz.", COMPONENT_LABELS),
        MetricFamily("power_voltage", "Voltage in volts.", COMPONENT_LABELS),
        MetricFamily("temperature", "Temperature in degrees celsius.", COMPONENT_LABELS),
    ]
}


Sample = Tuple[str, Dict[str, str], float]


def bool_to_float(v: bool) -> float:
    return 1.0 if v else 0.0


def info_labels_for(target: Target) -> Dict[str, str]:
    return {
        "target": target.address,
        "plug_name": target.display_name,
        "generation": target.generation.label if target.generation else "unknown",
    }


class PassResult:
    """Samples emitted by one collection pass for one target."""

    def __init__(self, target: Target) -> None:
        self.target = target
        self.lock = Lock()
        self.samples: List[Sample] = []
        self.reachable = False

    def emit(self, family: str, labels: Dict[str, str], value: float) -> None:
        if family not in FAMILIES:
            raise KeyError(f"unknown metric family: {family}")
        with self.lock:
            self.samples.append((family, dict(labels), float(value)))

    def snapshot(self) -> List[Sample]:
        with self.lock:
            return list(self.samples)


class MetricCollector:
    def __init__(
        self,
        transport: Transport,
        cache: StatusCache,
        health: HealthReporter,
        config_ttl: float = 60.0,
    ) -> None:
        self.transport = transport
        self.cache = cache
        self.health = health
        self.config_ttl = config_ttl
        self.handlers: Dict[ComponentKind, Callable[[ProtocolAdapter, ComponentItem, Dict[str, str], PassResult], None]] = {
            ComponentKind.SWITCH: self._collect_switch,
            ComponentKind.EM: self._collect_em,
            ComponentKind.TEMPERATURE: self._collect_temperature,
        }

    def adapter(self, target: Target, cancel: Event) -> ProtocolAdapter:
        return adapter_for(target, self.transport, self.cache, config_ttl=self.config_ttl, cancelled=cancel.is_set)

    def collect_target(self, target: Target, result: PassResult, cancel: Optional[Event] = None) -> None:
        cancel = cancel or Event()
        address = target.address

        target_labels = {"target": address, "plug_name": target.display_name}
        result.emit("info", info_labels_for(target), 1.0)

        adapter = self.adapter(target, cancel)
        try:
            device_config = adapter.fetch_config()
        except PassCancelled:
            logger.warning("target=%s pass cancelled before config fetch", address)
            return
        except ShellyError as e:
            logger.error("target=%s failed to fetch config: %s", address, e)
            self.health.mark_unhealthy(address)
            return
        result.reachable = True

        try:
            sys_status = adapter.fetch_system_status()
        except PassCancelled:
            return
        except ShellyError as e:
            logger.error("target=%s failed to decode sys status: %s", address, e)
        else:
            if sys_status.unixtime is not None:
                result.emit("sys_unixtime", target_labels, sys_status.unixtime)
            result.emit("sys_uptime", target_labels, sys_status.uptime)
            result.emit("sys_mem_total", target_labels, sys_status.ram_size)
            result.emit("sys_mem_free", target_labels, sys_status.ram_free)
            result.emit("sys_fs_size", target_labels, sys_status.fs_size)
            result.emit("sys_fs_free", target_labels, sys_status.fs_free)
            if sys_status.restart_required is not None:
                result.emit("sys_restart_required", target_labels, bool_to_float(sys_status.restart_required))

        try:
            wifi_status = adapter.fetch_wifi_status()
        except PassCancelled:
            return
        except ShellyError as e:
            logger.error("target=%s failed to decode wifi status: %s", address, e)
        else:
            wifi_labels = dict(target_labels)
            wifi_labels["ssid"] = wifi_status.ssid
            result.emit("wifi_rssi", wifi_labels, wifi_status.rssi)

        for item in discover_components(device_config, address):
            try:
                self.handlers[item.kind](adapter, item, target_labels, result)
            except PassCancelled:
                logger.warning("target=%s pass cancelled at component=%s", address, item.label_id)
                return
            except ShellyError as e:
                logger.error("target=%s failed to decode %s status for component=%s: %s", address, item.kind.value, item.label_id, e)

    def _collect_switch(self, adapter: ProtocolAdapter, item: ComponentItem, target_labels: Dict[str, str], result: PassResult) -> None:
        status = adapter.fetch_switch_status(item.id)

        switch_labels = dict(target_labels)
        switch_labels["id"] = item.label_id
        switch_labels["name"] = item.name

        switch_on_labels = dict(switch_labels)
        switch_on_labels["source"] = status.source
        result.emit("switch_on", switch_on_labels, bool_to_float(status.output))

        if status.current is not None:
            result.emit("power_current", switch_labels, status.current)
        if status.apower is not None:
            result.emit("power_total", switch_labels, status.apower)

    def _collect_em(self, adapter: ProtocolAdapter, item: ComponentItem, target_labels: Dict[str, str], result: PassResult) -> None:
        status = adapter.fetch_energy_meter_status(item.id)

        for phase in PHASES:
            p = status.phases[phase]
            labels = dict(target_labels)
            labels["id"] = f"{item.label_id}:{phase}"
            labels["name"] = item.name
            result.emit("power_current", labels, p.current)
            result.emit("power_apparent_current", labels, p.apparent_power)
            result.emit("power_total", labels, p.active_power)
            result.emit("power_factor", labels, p.power_factor)
            if p.frequency is not None:
                result.emit("power_frequency", labels, p.frequency)
            result.emit("power_voltage", labels, p.voltage)

        total_labels = dict(target_labels)
        total_labels["id"] = "em:total"
        total_labels["name"] = item.name
        result.emit("power_current", total_labels, status.total.current)
        result.emit("power_total", total_labels, status.total.active_power)

    def _collect_temperature(self, adapter: ProtocolAdapter, item: ComponentItem, target_labels: Dict[str, str], result: PassResult) -> None:
        status = adapter.fetch_temperature_status(item.id)

        temp_labels = dict(target_labels)
        temp_labels["id"] = item.label_id
        temp_labels["name"] = item.name
        result.emit("temperature", temp_labels, status.tc)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", int(s[1:])
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host, int(port_s)
    return "", int(s)


def load_config_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    if path.lower().endswith(".json"):
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Config root must be an object")
        return data

    data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = cfg.get(name, {})
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ValueError(f"'{name}' must be a mapping/object")
    return v


def to_targets(cfg: Dict[str, Any]) -> List[Target]:
    items = cfg.get("targets", [])
    if not isinstance(items, list) or not items:
        raise ValueError("Config must include a non-empty 'targets' list")

    out: List[Target] = []
    seen = set()
    for item in items:
        if isinstance(item, str):
            item = {"address": item}
        if not isinstance(item, dict):
            raise ValueError("Each target entry must be an address or an object")
        if not item.get("address"):
            raise ValueError("Each target entry must include 'address'")

        address = str(item["address"]).strip()
        if address in seen:
            raise ValueError(f"target {address}: listed more than once")
        seen.add(address)

        generation: Optional[Generation] = None
        if item.get("generation") is not None:
            try:
                generation = Generation.parse(item["generation"])
            except ValueError as e:
                raise ValueError(f"target {address}: {e}") from e

        out.append(Target(address=address, generation=generation, name=str(item.get("name") or "").strip()))

    return out


@dataclass
class Settings:
    listen_address: str = "0.0.0.0:9965"
    telemetry_path: str = "/metrics"
    timeout_seconds: float = 5.0
    max_parallel: int = 8
    scrape_timeout_seconds: float = 20.0
    config_cache_ttl_seconds: float = 60.0
    scheme: str = "http"
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None
    targets: List[Target] = field(default_factory=list)


def to_settings(cfg: Dict[str, Any]) -> Settings:
    web_cfg = _section(cfg, "web")
    shelly_cfg = _section(cfg, "shelly")
    auth_cfg = _section(shelly_cfg, "auth")

    s = Settings(
        listen_address=str(web_cfg.get("listen_address", Settings.listen_address)),
        telemetry_path=str(web_cfg.get("telemetry_path", Settings.telemetry_path)),
        timeout_seconds=float(shelly_cfg.get("timeout_seconds", Settings.timeout_seconds)),
        max_parallel=int(shelly_cfg.get("max_parallel", Settings.max_parallel)),
        scrape_timeout_seconds=float(shelly_cfg.get("scrape_timeout_seconds", Settings.scrape_timeout_seconds)),
        config_cache_ttl_seconds=float(shelly_cfg.get("config_cache_ttl_seconds", Settings.config_cache_ttl_seconds)),
        scheme=str(shelly_cfg.get("scheme", Settings.scheme)).lower(),
        auth_username=str(auth_cfg["username"]) if auth_cfg.get("username") else None,
        auth_password=str(auth_cfg["password"]) if auth_cfg.get("password") is not None else None,
        targets=to_targets(cfg),
    )

    if s.timeout_seconds <= 0:
        raise ValueError("shelly.timeout_seconds must be positive")
    if s.max_parallel < 1:
        raise ValueError("shelly.max_parallel must be at least 1")
    if s.scrape_timeout_seconds <= 0:
        raise ValueError("shelly.scrape_timeout_seconds must be positive")
    if s.scheme not in ("http", "https"):
        raise ValueError("shelly.scheme must be http or https")
    if not s.telemetry_path.startswith("/"):
        raise ValueError("web.telemetry_path must start with '/'")
    return s


class ShellyCollector:
    def __init__(
        self,
        discovery: StaticDiscovery,
        transport: Transport,
        cache: StatusCache,
        max_parallel: int = 8,
        scrape_timeout_seconds: float = 20.0,
        config_ttl: float = 60.0,
    ) -> None:
        self.discovery = discovery
        self.transport = transport
        self.cache = cache
        self.scrape_timeout_seconds = scrape_timeout_seconds
        self.metrics = MetricCollector(transport, cache, HealthReporter(discovery), config_ttl=config_ttl)
        self.executor = ThreadPoolExecutor(max_workers=max(1, max_parallel))

    def stop(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)

    def is_ready(self) -> bool:
        return bool(self.discovery.targets())

    def _resolve(self, target: Target) -> Target:
        if target.generation is not None:
            return target
        generation, model = detect_generation(self.transport, target.address)
        resolved = replace(target, generation=generation)
        self.discovery.replace_target(resolved)
        logger.info("target=%s detected generation=%s model=%s", target.address, generation.label, model)
        return resolved

    def _run_pass(self, target: Target, result: PassResult, cancel: Event) -> None:
        try:
            resolved = self._resolve(target)
        except ShellyError as e:
            result.emit("info", info_labels_for(target), 1.0)
            logger.error("target=%s failed to detect device generation: %s", target.address, e)
            self.metrics.health.mark_unhealthy(target.address)
            return
        result.target = resolved
        self.metrics.collect_target(resolved, result, cancel)

    def scrape(self) -> List[PassResult]:
        futs = {}
        for target in self.discovery.targets():
            result = PassResult(target)
            cancel = Event()
            futs[self.executor.submit(self._run_pass, target, result, cancel)] = (result, cancel)

        try:
            for fut in as_completed(futs, timeout=self.scrape_timeout_seconds):
                result, _ = futs[fut]
                try:
                    fut.result()
                except Exception:
                    logger.exception("target=%s collection pass failed", result.target.address)
        except FuturesTimeout:
            pending = []
            for fut, (result, cancel) in futs.items():
                if fut.done():
                    continue
                cancel.set()
                pending.append(result.target.address)
                # never started: still report the target as seen
                if fut.cancel():
                    result.emit("info", info_labels_for(result.target), 1.0)
            logger.warning("scrape timeout after %.1fs pending_targets=%s", self.scrape_timeout_seconds, ",".join(pending))

        results = [result for result, _ in futs.values()]
        for result in results:
            if result.reachable:
                self.discovery.mark_healthy(result.target.address)
        self.cache.purge_expired()
        return results

    def collect(self) -> Iterator[GaugeMetricFamily]:
        t0 = time.time()
        results = self.scrape()

        gauges = {
            key: GaugeMetricFamily(METRIC_PREFIX + fam.name, fam.help, labels=fam.labels)
            for key, fam in FAMILIES.items()
        }
        for result in results:
            for family, labels, value in result.snapshot():
                gauges[family].add_metric([labels.get(k, "") for k in FAMILIES[family].labels], value)

        scrape_dur = GaugeMetricFamily(METRIC_PREFIX + "scrape_duration_seconds", "Duration of the last scrape over all targets.")
        scrape_dur.add_metric([], time.time() - t0)
        build = GaugeMetricFamily(METRIC_PREFIX + "exporter_build_info", "Exporter build information.", labels=["version", "python"])
        build.add_metric([EXPORTER_VERSION, sys.version.split()[0]], 1.0)

        yield from gauges.values()
        yield scrape_dur
        yield build


def make_app(registry: CollectorRegistry, telemetry_path: str, collector: ShellyCollector):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == telemetry_path or path == "/":
            output = generate_latest(registry)
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        if path in ("/-/ready", "/readyz"):
            if collector.is_ready():
                start_response("200 OK", [("Content-Type", "text/plain")])
                return [b"ready"]
            start_response("503 Service Unavailable", [("Content-Type", "text/plain")])
            return [b"not_ready"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def find_config_file(explicit: Optional[str]) -> Optional[str]:
    if explicit:
        return explicit
    candidates = [
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parent / "config.yaml",
        Path("/config/config.yaml"),
    ]
    for c in candidates:
        if c.is_file():
            return str(c)
    return None


@click.command()
@click.option("--config.file", "config_file", envvar="SHELLY_EXPORTER_CONFIG", default=None, help="Path to the YAML/JSON config file.")
@click.option("--web.listen-address", "web_listen_address", default=None, help="Address to listen on, e.g. :9965.")
@click.option("--web.telemetry-path", "web_telemetry_path", default=None, help="Path under which to expose metrics.")
@click.option("--log.level", "log_level", envvar="LOG_LEVEL", default="INFO", show_default=True, help="Log level.")
def main(config_file: Optional[str], web_listen_address: Optional[str], web_telemetry_path: Optional[str], log_level: str) -> None:
    setup_logging(log_level)

    cfg_path = find_config_file(config_file)
    if not cfg_path:
        raise SystemExit(
            "missing config file: use --config.file=PATH, set SHELLY_EXPORTER_CONFIG=PATH, "
            "or place config.yaml in the current directory, script directory, or /config/config.yaml"
        )

    try:
        settings = to_settings(load_config_file(cfg_path))
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise SystemExit(f"invalid config file {cfg_path}: {e}")
    logger.info("config_file=%s", cfg_path)

    listen = web_listen_address or settings.listen_address
    telemetry_path = web_telemetry_path or settings.telemetry_path
    host, port = parse_listen_address(listen)

    transport = Transport(
        timeout_seconds=settings.timeout_seconds,
        auth_username=settings.auth_username,
        auth_password=settings.auth_password,
        scheme=settings.scheme,
    )
    discovery = StaticDiscovery(settings.targets)

    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)

    collector = ShellyCollector(
        discovery=discovery,
        transport=transport,
        cache=StatusCache(),
        max_parallel=settings.max_parallel,
        scrape_timeout_seconds=settings.scrape_timeout_seconds,
        config_ttl=settings.config_cache_ttl_seconds,
    )
    registry.register(collector)

    app = make_app(registry, telemetry_path, collector)

    httpd = make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logger.info(
        "listening=%s:%s telemetry_path=%s targets=%s timeout=%.1fs scrape_timeout=%.1fs parallel=%s config_ttl=%.0fs",
        host if host else "0.0.0.0",
        port,
        telemetry_path,
        len(settings.targets),
        settings.timeout_seconds,
        settings.scrape_timeout_seconds,
        settings.max_parallel,
        settings.config_cache_ttl_seconds,
    )

    try:
        httpd.serve_forever()
    finally:
        collector.stop()
        transport.close()
        httpd.server_close()


if __name__ == "__main__":
    main()
