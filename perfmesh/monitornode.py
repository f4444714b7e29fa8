"""A monitoring node that reports its metrics to a distributed monitor over TCP."""

from __future__ import annotations

import json
import logging
import platform
import random
import socket
import threading
from collections.abc import Mapping
from datetime import datetime
from enum import IntEnum
from typing import Any

from perfmesh.distributed import _Signal, _Ticker

log = logging.getLogger(__name__)

DEFAULT_SAMPLING_INTERVAL = 5000
MIN_SAMPLING_INTERVAL = 1000
CONNECT_TIMEOUT = 5.0

_RECV_SIZE = 65536


class NodeState(IntEnum):
    """Connection state of a node towards its monitoring server."""

    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2
    ERROR = 3


def _iso_now() -> str:
    return datetime.now().replace(microsecond=0).isoformat()


def _os_description() -> str:
    name = f"{platform.system()} {platform.release()}".strip()
    return name or "unknown"


def _default_node_id() -> str:
    return f"{socket.gethostname()}-{random.randrange(10000)}"


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class MonitorNode:
    """A client node that holds metrics and sends them to a monitoring server.

    Callbacks may be attached to ``state_changed`` (state) and
    ``command_received`` (command, params).
    """

    def __init__(self, node_id: str | None = None, node_name: str | None = None) -> None:
        self.node_id = node_id if node_id is not None else _default_node_id()
        self.node_name = node_name if node_name is not None else _os_description()

        self.state_changed = _Signal()
        self.command_received = _Signal()

        self._lock = threading.RLock()
        self._socket: socket.socket | None = None
        self._state = NodeState.DISCONNECTED
        self._metrics: dict[str, float] = {}
        self._sampling_interval = DEFAULT_SAMPLING_INTERVAL
        self._sampling = False
        self._ticker = _Ticker(self.send_metrics)

    def __enter__(self) -> MonitorNode:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stop sampling and drop the server connection."""
        self.stop_sampling()
        self.disconnect_from_server()

    # --- identity and state ------------------------------------------------

    def set_node_info(self, node_id: str, node_name: str) -> None:
        self.node_id = node_id
        self.node_name = node_name
        log.info("node info set: %s %s", node_id, node_name)

    @property
    def state(self) -> NodeState:
        return self._state

    def _set_state(self, state: NodeState) -> None:
        self._state = state
        self.state_changed.emit(state)

    # --- connection --------------------------------------------------------

    def connect_to_server(self, address: str, port: int) -> bool:
        """Connect to the monitoring server and register; return whether it worked."""
        if self._socket is not None:
            self.disconnect_from_server()

        self._set_state(NodeState.CONNECTING)
        log.info("connecting to monitoring server %s:%s", address, port)
        try:
            sock = socket.create_connection((str(address), int(port)), timeout=CONNECT_TIMEOUT)
        except OSError as exc:
            log.warning("connection error: %s", exc)
            self._set_state(NodeState.ERROR)
            return False
        sock.settimeout(None)

        with self._lock:
            self._socket = sock
        self._set_state(NodeState.CONNECTED)
        log.info("connected to monitoring server")

        self._send(
            {
                "command": "registerNode",
                "nodeId": self.node_id,
                "nodeName": self.node_name,
                "osInfo": _os_description(),
                "timestamp": _iso_now(),
            }
        )
        threading.Thread(target=self._read_loop, args=(sock,), daemon=True).start()
        return True

    def disconnect_from_server(self) -> None:
        """Close the connection, if any, and enter the disconnected state."""
        with self._lock:
            sock = self._socket
            self._socket = None
        if sock is not None:
            _close_socket(sock)
        self._set_state(NodeState.DISCONNECTED)
        log.info("disconnected from monitoring server")

    def _send(self, message: Mapping[str, Any]) -> bool:
        payload = json.dumps(message, indent=4).encode("utf-8")
        with self._lock:
            sock = self._socket
            if sock is None:
                return False
            try:
                sock.sendall(payload)
            except OSError as exc:
                self._handle_error(sock, exc)
                return False
        return True

    def _read_loop(self, sock: socket.socket) -> None:
        while True:
            try:
                data = sock.recv(_RECV_SIZE)
            except OSError as exc:
                self._handle_error(sock, exc)
                return
            if not data:
                self._handle_error(sock, None)
                return
            try:
                self.handle_command(data)
            except ValueError as exc:
                log.warning("discarding server message: %s", exc)

    def _handle_error(self, sock: socket.socket, error: OSError | None) -> None:
        with self._lock:
            if self._socket is not sock:
                return
            self._socket = None
        _close_socket(sock)
        log.warning("connection error: %s", error if error is not None else "remote host closed")
        self._set_state(NodeState.ERROR)

    # --- metrics -----------------------------------------------------------

    def add_metric(self, metric_name: str, value: float) -> None:
        with self._lock:
            self._metrics[metric_name] = float(value)

    def remove_metric(self, metric_name: str) -> None:
        with self._lock:
            self._metrics.pop(metric_name, None)

    def metrics(self) -> dict[str, float]:
        """A copy of every metric currently held."""
        with self._lock:
            return dict(self._metrics)

    def collect_system_metrics(self) -> None:
        """Refresh the cpu, memory, disk and network metrics with simulated readings."""
        self.add_metric("cpu", random.randrange(100))
        self.add_metric("memory", random.randrange(100))
        self.add_metric("disk", random.randrange(100))
        self.add_metric("network", random.randrange(1000))

    def metrics_message(self) -> dict[str, Any]:
        """The message that carries this node's metrics to the server."""
        return {
            "command": "metrics",
            "nodeId": self.node_id,
            "timestamp": _iso_now(),
            "metrics": self.metrics(),
        }

    def send_metrics(self) -> bool:
        """Refresh and send the metrics; return False when not connected."""
        if self._state is not NodeState.CONNECTED:
            return False
        self.collect_system_metrics()
        return self._send(self.metrics_message())

    # --- sampling ----------------------------------------------------------

    @property
    def sampling_interval(self) -> int:
        """Milliseconds between metric reports."""
        return self._sampling_interval

    def set_sampling_interval(self, msec: int) -> None:
        """Set the report interval; values under one second are ignored."""
        if msec < MIN_SAMPLING_INTERVAL:
            log.debug("ignoring sampling interval %s ms below minimum", msec)
            return
        self._sampling_interval = msec
        if self._ticker.active:
            self._ticker.start(msec)
        log.info("sampling interval set to %s ms", msec)

    @property
    def is_sampling(self) -> bool:
        return self._sampling

    def start_sampling(self) -> None:
        """Begin periodic reports and send one straight away."""
        if self._sampling:
            return
        self.collect_system_metrics()
        self._ticker.start(self._sampling_interval)
        self._sampling = True
        log.info("sampling started")
        self.send_metrics()

    def stop_sampling(self) -> None:
        if not self._sampling:
            return
        self._ticker.stop()
        self._sampling = False
        log.info("sampling stopped")

    # --- commands ----------------------------------------------------------

    def handle_command(self, data: bytes | str) -> str:
        """Carry out one command message from the server and return its name.

        Raises ``ValueError`` if the message is not a JSON object with a
        ``command`` field.
        """
        try:
            document = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid JSON from server: {exc}") from exc
        if not isinstance(document, dict):
            raise ValueError("server message is not a JSON object")
        if "command" not in document:
            raise ValueError("server message lacks 'command'")

        raw_command = document["command"]
        command = raw_command if isinstance(raw_command, str) else ""
        raw_params = document.get("params")
        params: dict[str, Any] = dict(raw_params) if isinstance(raw_params, dict) else {}

        if command == "getMetrics":
            self.send_metrics()
        elif command == "setSamplingInterval":
            interval = params.get("interval")
            if isinstance(interval, (int, float)) and not isinstance(interval, bool):
                self.set_sampling_interval(int(interval))
        elif command == "startSampling":
            self.start_sampling()
        elif command == "stopSampling":
            self.stop_sampling()

        self.command_received.emit(command, params)
        return command