from __future__ import annotations

import ipaddress
import json
import logging
import socket
import time
from dataclasses import dataclass, field
from threading import Event
from typing import Any, Callable, Dict, List, Optional, Tuple

Address = Tuple[str, int]

DEFAULT_PORT = 9999
BROADCAST_ADDRESS: Address = ("255.255.255.255", DEFAULT_PORT)
DEFAULT_TIMEOUT_SECONDS = 1.0
CANCEL_POLL_INTERVAL = 0.1
RECV_BUFFER_SIZE = 2048

INITIAL_KEY = 0xAB

GET_SYSINFO = "get_sysinfo"
SET_RELAY_STATE = "set_relay_state"


class KasaError(Exception):
    pass


class EncodeError(KasaError):
    pass


class DecodeError(KasaError):
    pass


class AddressError(KasaError, ValueError):
    pass


class TransportError(KasaError):
    def __init__(self, message: str, replies: Optional[List["APIMessage"]] = None) -> None:
        super().__init__(message)
        self.replies: List[APIMessage] = replies or []


class ProtocolError(KasaError):
    pass


class DeviceError(ProtocolError):
    """The device answered but rejected the request with a non-zero err_code."""

    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        self.message = message
        text = f"{GET_SYSINFO} failed: error code {code}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)


class NoResponseError(KasaError):
    pass


class TooManyResponsesError(KasaError):
    pass


def encrypt(data: bytes) -> bytes:
    out = bytearray(len(data))
    key = INITIAL_KEY
    for i, b in enumerate(data):
        key = b ^ key
        out[i] = key
    return bytes(out)


def decrypt(data: bytes) -> bytes:
    out = bytearray(len(data))
    key = INITIAL_KEY
    for i, b in enumerate(data):
        out[i] = b ^ key
        key = b
    return bytes(out)


def format_addr(addr: Optional[Address]) -> str:
    if addr is None:
        return ""
    return f"{addr[0]}:{addr[1]}"


def parse_addr(s: str, default_port: int = DEFAULT_PORT) -> Address:
    """
    Parse "host", "host:port" or ":port" into an IPv4 (host, port) pair.

    Hostnames are resolved. An empty host is the unspecified address.
    """
    s = s.strip()
    if not s:
        raise AddressError("empty address")

    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        try:
            port = int(port_s)
        except ValueError:
            raise AddressError(f"invalid port {port_s!r} in address {s!r}") from None
    else:
        host, port = s, default_port

    if not 0 <= port <= 65535:
        raise AddressError(f"port {port} out of range in address {s!r}")

    host = host.strip()
    if "\x00" in host:
        raise AddressError(f"invalid host in address {s!r}")
    if not host:
        return "0.0.0.0", port

    try:
        return str(ipaddress.IPv4Address(host)), port
    except ValueError:
        pass

    try:
        return socket.gethostbyname(host), port
    except (OSError, UnicodeError, TypeError, ValueError) as e:
        raise AddressError(f"cannot resolve {host!r}: {e}") from e


@dataclass
class APIMessage:
    system: Dict[str, Any] = field(default_factory=dict)
    remote_address: Optional[Address] = None

    def to_json(self) -> str:
        try:
            return json.dumps({"system": self.system}, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise EncodeError(f"cannot serialize message: {e}") from e

    def encode(self) -> bytes:
        # Devices choke on trailing whitespace since it shifts the cipher key.
        return encrypt(self.to_json().rstrip("\n").encode("utf-8"))

    def get_module(self, module: str) -> Optional[Dict[str, Any]]:
        payload = self.system.get(module)
        if isinstance(payload, dict):
            return payload
        return None


def decode_message(raw: bytes, remote_address: Optional[Address] = None) -> APIMessage:
    try:
        data = json.loads(decrypt(raw).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"invalid payload: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError("payload root is not an object")

    system = data.get("system")
    if system is None:
        system = {}
    if not isinstance(system, dict):
        raise DecodeError("payload 'system' is not an object")

    return APIMessage(system=system, remote_address=remote_address)


# Request payload builders for every module this client speaks.
MODULES: Dict[str, Callable[..., Any]] = {
    GET_SYSINFO: lambda: None,
    SET_RELAY_STATE: lambda state: {"state": bool(state)},
}


def build_request(module: str, *args: Any) -> APIMessage:
    try:
        builder = MODULES[module]
    except KeyError:
        raise EncodeError(f"unknown module {module!r}") from None
    return APIMessage(system={module: builder(*args)})


def get_sysinfo_request() -> APIMessage:
    return build_request(GET_SYSINFO)


def set_relay_state_request(state: bool) -> APIMessage:
    return build_request(SET_RELAY_STATE, state)


def receive(sock: socket.socket, timeout: float = DEFAULT_TIMEOUT_SECONDS, cancel: Optional[Event] = None) -> List[APIMessage]:
    """
    Collect replies until no datagram arrives for ``timeout`` seconds.

    The idle timeout is the normal end of the window and is not an error.
    Undecodable datagrams are dropped. Other socket errors raise
    TransportError carrying what was collected so far.
    """
    replies: List[APIMessage] = []
    deadline = time.monotonic() + timeout
    while True:
        if cancel is not None and cancel.is_set():
            return replies

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return replies

        wait = remaining
        if cancel is not None:
            wait = min(wait, CANCEL_POLL_INTERVAL)

        try:
            sock.settimeout(wait)
            raw, raddr = sock.recvfrom(RECV_BUFFER_SIZE)
        except socket.timeout:
            continue
        except OSError as e:
            raise TransportError(f"receive failed: {e}", replies) from e

        try:
            reply = decode_message(raw, (raddr[0], raddr[1]))
        except DecodeError as e:
            logging.debug("dropped datagram from=%s reason=%s", format_addr(raddr), e)
        else:
            replies.append(reply)
        deadline = time.monotonic() + timeout


def send(
    message: APIMessage,
    remote: Address,
    local: Optional[Address] = None,
    expect_response: bool = False,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    cancel: Optional[Event] = None,
) -> List[APIMessage]:
    payload = message.encode()
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    except OSError as e:
        raise TransportError(f"cannot open socket: {e}") from e

    with sock:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(local or ("0.0.0.0", 0))
            sock.sendto(payload, remote)
        except OSError as e:
            raise TransportError(f"send to {format_addr(remote)} failed: {e}") from e

        if not expect_response:
            return []
        return receive(sock, timeout, cancel)


_INT = (int,)
_STR = (str,)

# wire name -> (attribute, accepted types)
SYSINFO_FIELDS: Dict[str, Tuple[str, Tuple[type, ...]]] = {
    "err_code": ("error_code", _INT),
    "error_msg": ("error_message", _STR),
    "active_mode": ("active_mode", _STR),
    "alias": ("alias", _STR),
    "deviceId": ("device_id", _STR),
    "dev_name": ("dev_name", _STR),
    "feature": ("feature", _STR),
    "hwId": ("hw_id", _STR),
    "hw_ver": ("hw_ver", _STR),
    "icon_hash": ("icon_hash", _STR),
    "led_off": ("led_off", _INT),
    "mac": ("mac", _STR),
    "mic_type": ("mic_type", _STR),
    "model": ("model", _STR),
    "ntc_code": ("ntc_code", _INT),
    "oemId": ("oem_id", _STR),
    "on_time": ("on_time", _INT),
    "relay_state": ("relay_state", _INT),
    "rssi": ("rssi", _INT),
    "sw_ver": ("sw_ver", _STR),
    "status": ("status", _STR),
    "updating": ("updating", _INT),
}


def _project_value(key: str, value: Any, types: Tuple[type, ...]) -> Any:
    if types is _INT:
        if isinstance(value, bool):
            raise ProtocolError(f"{GET_SYSINFO}: field {key!r} expected integer, got bool")
        if isinstance(value, float) and value.is_integer():
            return int(value)
    if not isinstance(value, types):
        raise ProtocolError(f"{GET_SYSINFO}: field {key!r} expected {types[0].__name__}, got {type(value).__name__}")
    return value


@dataclass
class SystemInformation:
    remote_address: Optional[Address] = None

    error_code: int = 0
    error_message: str = ""

    active_mode: str = ""
    alias: str = ""
    device_id: str = ""
    dev_name: str = ""
    feature: str = ""
    hw_id: str = ""
    hw_ver: str = ""
    icon_hash: str = ""
    led_off: int = 0
    mac: str = ""
    mic_type: str = ""
    model: str = ""
    ntc_code: int = 0
    oem_id: str = ""
    on_time: int = 0
    relay_state: int = 0
    rssi: int = 0
    sw_ver: str = ""
    status: str = ""
    updating: int = 0
    next_action_type: Optional[int] = None

    @classmethod
    def from_message(cls, msg: APIMessage) -> "SystemInformation":
        mod = msg.get_module(GET_SYSINFO)
        if mod is None:
            raise ProtocolError(f"{GET_SYSINFO} failed: response did not contain {GET_SYSINFO} payload")

        values: Dict[str, Any] = {}
        for key, (attr, types) in SYSINFO_FIELDS.items():
            v = mod.get(key)
            if v is None:
                continue
            values[attr] = _project_value(key, v, types)

        next_action = mod.get("next_action")
        if next_action is not None:
            if not isinstance(next_action, dict):
                raise ProtocolError(f"{GET_SYSINFO}: field 'next_action' expected object")
            t = next_action.get("type")
            if t is not None:
                values["next_action_type"] = _project_value("next_action.type", t, _INT)

        return cls(remote_address=msg.remote_address, **values)

    def raise_for_error(self) -> None:
        if self.error_code != 0:
            raise DeviceError(self.error_code, self.error_message)

    @property
    def is_on(self) -> bool:
        return self.relay_state == 1


def get_system_information(
    remote: Address,
    local: Optional[Address] = None,
    strict: bool = False,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    cancel: Optional[Event] = None,
) -> List[SystemInformation]:
    """
    Send get_sysinfo to ``remote`` and project every reply.

    In strict mode the first reply that fails to project fails the whole call.
    Otherwise such replies are skipped.
    """
    replies = send(get_sysinfo_request(), remote, local, expect_response=True, timeout=timeout, cancel=cancel)
    out: List[SystemInformation] = []
    for reply in replies:
        try:
            out.append(SystemInformation.from_message(reply))
        except ProtocolError as e:
            if strict:
                raise
            logging.debug("skipped reply from=%s reason=%s", format_addr(reply.remote_address), e)
    return out


def query_device(
    remote: Address,
    local: Optional[Address] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    cancel: Optional[Event] = None,
) -> SystemInformation:
    infos = get_system_information(remote, local, strict=True, timeout=timeout, cancel=cancel)
    if not infos:
        raise NoResponseError(f"no response from device: {format_addr(remote)}")
    if len(infos) > 1:
        raise TooManyResponsesError(f"got multiple responses for address: {format_addr(remote)}")
    return infos[0]


def discover(
    local: Optional[Address] = None,
    broadcast: Address = BROADCAST_ADDRESS,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    cancel: Optional[Event] = None,
) -> List[SystemInformation]:
    return get_system_information(broadcast, local, strict=False, timeout=timeout, cancel=cancel)


def set_relay_state(remote: Address, state: bool, local: Optional[Address] = None) -> None:
    # No acknowledgement comes back for this module; a written datagram is success.
    send(set_relay_state_request(state), remote, local, expect_response=False)
