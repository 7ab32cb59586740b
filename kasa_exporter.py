from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from socketserver import ThreadingMixIn
from threading import Lock, Thread
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from kasa_protocol import (
    DEFAULT_TIMEOUT_SECONDS,
    Address,
    AddressError,
    KasaError,
    SystemInformation,
    parse_addr,
    query_device,
)

EXPORTER_VERSION = "1.0.0"

INFO_LABELS = ["alias", "id", "name", "model", "sw"]


class BadTargetError(KasaError):
    pass


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

    import yaml

    data = yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def parse_timeout(value: Any) -> float:
    timeout = float(value)
    if not timeout > 0:
        raise ValueError(f"timeout must be greater than zero, got {value}")
    return timeout


def find_config_file(explicit: Optional[str]) -> Optional[str]:
    cfg_path = explicit or os.environ.get("KASA_EXPORTER_CONFIG", "").strip() or None
    if cfg_path is not None:
        return cfg_path
    for c in (Path.cwd() / "config.yaml", Path("/config/config.yaml")):
        if c.is_file():
            return str(c)
    return None


class DeviceExporter:
    """Metrics for one target, kept in a registry of its own."""

    def __init__(self, target: str, address: Address) -> None:
        self.target = target
        self.address = address
        self.registry = CollectorRegistry()
        self.on_time = Gauge("kasa_on_time", "Amount of time a Kasa device has been on.", registry=self.registry)
        self.relay_state = Gauge("kasa_relay_state", "State of the relay for a given Kasa device.", registry=self.registry)
        self.rssi = Gauge("kasa_rssi", "RSSI of the Kasa device radio.", registry=self.registry)
        self.info = Gauge("kasa_device_info", "Information describing the Kasa device.", INFO_LABELS, registry=self.registry)

    def update(self, local: Optional[Address] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> SystemInformation:
        info = query_device(self.address, local, timeout=timeout)
        info.raise_for_error()
        self.on_time.set(float(info.on_time))
        self.relay_state.set(float(info.relay_state))
        self.rssi.set(float(info.rssi))
        self.info.clear()
        self.info.labels(
            alias=info.alias,
            id=info.device_id,
            name=info.dev_name,
            model=info.model,
            sw=info.sw_ver,
        ).set(1.0)
        return info

    def render(self) -> bytes:
        return generate_latest(self.registry)


class ExporterCache:
    """
    Per-target DeviceExporters, created on first scrape and never evicted.

    Lookups of known targets take no lock. Creation happens under a single
    membership lock with a re-check, so each target is built exactly once.
    """

    def __init__(
        self,
        local_address: Optional[Address] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        factory: Callable[[str, Address], DeviceExporter] = DeviceExporter,
    ) -> None:
        self.local_address = local_address
        self.timeout = timeout
        self.factory = factory
        self.exporters: Dict[str, DeviceExporter] = {}
        self.lock = Lock()

    def __len__(self) -> int:
        return len(self.exporters)

    def __contains__(self, target: object) -> bool:
        return target in self.exporters

    def exporter_for(self, target: str) -> DeviceExporter:
        try:
            address = parse_addr(target)
        except AddressError as e:
            raise BadTargetError(f"bad target: {e}") from e

        de = self.exporters.get(target)
        if de is not None:
            return de

        with self.lock:
            de = self.exporters.get(target)
            if de is None:
                de = self.factory(target, address)
                self.exporters[target] = de
                logging.info("new_target=%s address=%s:%s", target, address[0], address[1])
        return de

    def scrape(self, target: str) -> bytes:
        de = self.exporter_for(target)
        de.update(self.local_address, self.timeout)
        return de.render()


class ScrapeStats:
    def __init__(self, registry: CollectorRegistry, version: str) -> None:
        self.scrapes = Counter("kasa_exporter_scrapes_total", "Total target scrapes handled.", registry=registry)
        self.errors = Counter("kasa_exporter_scrape_errors_total", "Total target scrapes that failed.", ["reason"], registry=registry)
        build = Gauge("kasa_exporter_build_info", "Exporter build information.", ["version", "python"], registry=registry)
        build.labels(version=version, python=sys.version.split()[0]).set(1.0)


def make_app(
    cache: ExporterCache,
    registry: CollectorRegistry,
    telemetry_path: str = "/metrics",
    scrape_path: str = "/scrape",
    version: str = EXPORTER_VERSION,
):
    stats = ScrapeStats(registry, version)

    def scrape(environ, start_response):
        query = parse_qs(environ.get("QUERY_STRING", ""))
        target = (query.get("target") or [""])[0].strip()
        if not target:
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"Target Not Found"]

        stats.scrapes.inc()
        try:
            output = cache.scrape(target)
        except BadTargetError as e:
            stats.errors.labels(reason="bad_target").inc()
            logging.warning("scrape target=%s error=%s", target, e)
            start_response("500 Internal Server Error", [("Content-Type", "text/plain")])
            return [str(e).encode("utf-8")]
        except KasaError as e:
            stats.errors.labels(reason="device").inc()
            logging.warning("scrape target=%s error=%s", target, e)
            start_response("500 Internal Server Error", [("Content-Type", "text/plain")])
            return [f"Failed polling Kasa device: {e}".encode("utf-8")]

        start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
        return [output]

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        if path == scrape_path:
            return scrape(environ, start_response)
        if path == telemetry_path or path == "/":
            output = generate_latest(registry)
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [output]
        if path in ("/-/healthy", "/healthz"):
            start_response("200 OK", [("Content-Type", "text/plain")])
            return [b"ok"]
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def main(argv: Optional[list] = None) -> int:
    p = argparse.ArgumentParser(prog="kasa-exporter")
    p.add_argument("--config.file", dest="config_file", default=None)
    p.add_argument("--web.listen-address", dest="web_listen_address", default=None)
    p.add_argument("--web.telemetry-path", dest="web_telemetry_path", default=None)
    p.add_argument("--web.scrape-path", dest="web_scrape_path", default=None)
    p.add_argument("--kasa.local-address", dest="kasa_local_address", default=None)
    p.add_argument("--kasa.timeout", dest="kasa_timeout", type=parse_timeout, default=None)
    p.add_argument("--log.level", dest="log_level", default=os.environ.get("LOG_LEVEL", "INFO"))
    args = p.parse_args(argv)

    setup_logging(args.log_level)

    cfg: Dict[str, Any] = {}
    cfg_path = find_config_file(args.config_file)
    if cfg_path:
        cfg = load_config_file(cfg_path)
        logging.info("config_file=%s", cfg_path)

    web_cfg = cfg.get("web", {}) if isinstance(cfg.get("web", {}), dict) else {}
    kasa_cfg = cfg.get("kasa", {}) if isinstance(cfg.get("kasa", {}), dict) else {}

    listen = args.web_listen_address or str(web_cfg.get("listen_address", "0.0.0.0:9115"))
    telemetry_path = args.web_telemetry_path or str(web_cfg.get("telemetry_path", "/metrics"))
    scrape_path = args.web_scrape_path or str(web_cfg.get("scrape_path", "/scrape"))
    host, port = parse_listen_address(listen)

    timeout_seconds = args.kasa_timeout
    if timeout_seconds is None:
        try:
            timeout_seconds = parse_timeout(kasa_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
        except (TypeError, ValueError) as e:
            raise SystemExit(f"invalid kasa.timeout_seconds: {e}")

    local_s = args.kasa_local_address or kasa_cfg.get("local_address")
    local_address = None
    if local_s:
        try:
            local_address = parse_addr(str(local_s), default_port=0)
        except AddressError as e:
            raise SystemExit(f"invalid local address: {e}")

    registry = CollectorRegistry()
    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)

    cache = ExporterCache(local_address=local_address, timeout=timeout_seconds)
    app = make_app(cache, registry, telemetry_path, scrape_path, EXPORTER_VERSION)

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

    logging.info(
        "listening=%s:%s telemetry_path=%s scrape_path=%s timeout=%.1fs local=%s version=%s",
        host if host else "0.0.0.0",
        port,
        telemetry_path,
        scrape_path,
        timeout_seconds,
        f"{local_address[0]}:{local_address[1]}" if local_address else "any",
        EXPORTER_VERSION,
    )

    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
