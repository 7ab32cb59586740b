"""Shared fixtures: a loopback UDP responder standing in for Kasa plugs."""

import json
import socket
import threading

import pytest

from kasa_protocol import encrypt


def sysinfo_reply(**fields):
    base = {
        "err_code": 0,
        "alias": "Lamp",
        "deviceId": "8006ABCDEF",
        "dev_name": "Smart Wi-Fi Plug",
        "model": "HS100(US)",
        "sw_ver": "1.2.5 Build 171213 Rel.101523",
        "hw_ver": "1.0",
        "relay_state": 1,
        "on_time": 3600,
        "rssi": -52,
    }
    base.update(fields)
    return {"system": {"get_sysinfo": base}}


def wire(payload):
    if isinstance(payload, bytes):
        return payload
    return encrypt(json.dumps(payload).encode("utf-8"))


class FakeDevice:
    """Answers every datagram it receives with a configurable list of replies."""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.05)
        self.replies = [sysinfo_reply()]
        self.received = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def address(self):
        return self.sock.getsockname()

    @property
    def target(self):
        host, port = self.address
        return f"{host}:{port}"

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        self._thread.join(timeout=2)
        self.sock.close()

    def _serve(self):
        while not self._stop.is_set():
            try:
                raw, addr = self.sock.recvfrom(2048)
            except socket.timeout:
                continue
            except OSError:
                return
            self.received.append(raw)
            for reply in list(self.replies):
                self.sock.sendto(wire(reply), addr)


@pytest.fixture
def fake_device():
    device = FakeDevice().start()
    yield device
    device.stop()
