"""Collects metrics from remote monitoring nodes over TCP and aggregates them."""

from __future__ import annotations

import json
import logging
import socket
import statistics
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any, Protocol

log = logging.getLogger(__name__)

DEFAULT_PORT = 8765
DEFAULT_SAMPLING_INTERVAL = 5000
MIN_SAMPLING_INTERVAL = 1000
CONNECT_TIMEOUT = 3.0

_RECV_SIZE = 65536
_ACCEPT_POLL = 0.2
_SEPARATOR = "-" * 20
_REPORT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# A metric whose name contains the key (case-insensitively) and whose value
# exceeds the limit is reported as an anomaly.
_ANOMALY_RULES = (("cpu", 90.0), ("memory", 90.0), ("disk", 95.0))


class NodeStatus(IntEnum):
    """Connection state of a remote node as seen by the monitor."""

    CONNECTED = 0
    DISCONNECTED = 1
    CONNECTING = 2
    FAILED = 3


class AggregationType(IntEnum):
    """How metric values from several nodes are combined."""

    SUM = 0
    AVERAGE = 1
    MAXIMUM = 2
    MINIMUM = 3
    MEDIAN = 4


@dataclass
class NodeInfo:
    """A remote node and the last metrics received from it."""

    node_id: str
    node_name: str
    address: str
    port: int
    is_active: bool = False
    last_seen: datetime = field(default_factory=datetime.now)
    last_metrics: dict[str, float] = field(default_factory=dict)


class _SampleStore(Protocol):
    def store_sample(self, key: str, value: float, timestamp: datetime) -> None: ...


class _PerformanceSink(Protocol):
    def add_data_point(
        self,
        cpu_usage: float,
        memory_usage: float,
        disk_io: float,
        network_usage: float,
        timestamp: datetime,
    ) -> None: ...


class _Signal:
    """A list of callbacks invoked together."""

    def __init__(self) -> None:
        self._slots: list[Callable[..., Any]] = []

    def connect(self, slot: Callable[..., Any]) -> None:
        self._slots.append(slot)

    def emit(self, *args: Any) -> None:
        for slot in list(self._slots):
            slot(*args)


class _Ticker:
    """Calls a function repeatedly on a background thread."""

    def __init__(self, callback: Callable[[], None]) -> None:
        self._callback = callback
        self._interval = 0.0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return self._thread is not None

    def start(self, interval_ms: int) -> None:
        self.stop()
        self._interval = interval_ms / 1000.0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        if thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            try:
                self._callback()
            except Exception:  # keep ticking whatever one round does
                log.exception("periodic task failed")


def _iso_now() -> str:
    return datetime.now().replace(microsecond=0).isoformat()


def _to_double(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def _is_anomalous(name: str, value: float) -> bool:
    lowered = name.lower()
    return any(key in lowered and value > limit for key, limit in _ANOMALY_RULES)


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def aggregate(values: Iterable[float], kind: AggregationType) -> float:
    """Combine ``values`` as ``kind`` says; an empty input gives 0.0."""
    data = [float(value) for value in values]
    if not data:
        return 0.0
    kind = AggregationType(kind)
    if kind is AggregationType.SUM:
        return sum(data)
    if kind is AggregationType.AVERAGE:
        return sum(data) / len(data)
    if kind is AggregationType.MAXIMUM:
        return max(data)
    if kind is AggregationType.MINIMUM:
        return min(data)
    return float(statistics.median(data))


def parse_node_data(data: bytes | str) -> tuple[str, dict[str, float]]:
    """Parse a node's JSON message into its id and metrics.

    Raises ``ValueError`` if the message is not a JSON object holding both
    ``nodeId`` and ``metrics``. Non-string ids become empty, non-numeric
    metric values become 0.0.
    """
    try:
        document = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"invalid JSON from node: {exc}") from exc
    if not isinstance(document, dict):
        raise ValueError("node message is not a JSON object")
    if "nodeId" not in document or "metrics" not in document:
        raise ValueError("node message lacks 'nodeId' or 'metrics'")

    raw_id = document["nodeId"]
    node_id = raw_id if isinstance(raw_id, str) else ""
    raw_metrics = document["metrics"] if isinstance(document["metrics"], dict) else {}
    metrics = {str(name): _to_double(value) for name, value in raw_metrics.items()}
    return node_id, metrics


class DistributedMonitor:
    """Keeps a set of remote nodes, polls them for metrics and aggregates the results.

    Callbacks may be attached to ``node_status_changed`` (node_id, status),
    ``new_data_received`` (node_id, metrics) and ``anomaly_detected``
    (node_id, metric_name, value).
    """

    def __init__(
        self,
        storage: _SampleStore | None = None,
        analyzer: _PerformanceSink | None = None,
    ) -> None:
        self.storage = storage
        self.analyzer = analyzer

        self.node_status_changed = _Signal()
        self.new_data_received = _Signal()
        self.anomaly_detected = _Signal()

        self._lock = threading.RLock()
        self._nodes: dict[str, NodeInfo] = {}
        self._connections: dict[str, socket.socket] = {}
        self._clients: set[socket.socket] = set()
        self._server: socket.socket | None = None
        self._server_stop = threading.Event()

        self._sampling_interval = DEFAULT_SAMPLING_INTERVAL
        self._ticker = _Ticker(self.request_data_from_all_nodes)
        self._monitoring = False

    def __enter__(self) -> DistributedMonitor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # --- server side -------------------------------------------------------

    @property
    def server_port(self) -> int | None:
        """The port the server listens on, or None when it is not listening."""
        server = self._server
        return server.getsockname()[1] if server is not None else None

    def init_server(self, port: int = DEFAULT_PORT) -> int:
        """Listen for incoming node connections on ``port``; return the bound port.

        Raises ``OSError`` if the port cannot be bound.
        """
        self._close_server()
        try:
            server = socket.create_server(("", port))
        except OSError:
            log.error("distributed monitoring server failed to listen on port %s", port)
            raise
        server.settimeout(_ACCEPT_POLL)
        stop = threading.Event()
        self._server = server
        self._server_stop = stop
        threading.Thread(target=self._accept_loop, args=(server, stop), daemon=True).start()
        bound = server.getsockname()[1]
        log.info("distributed monitoring server listening on port %s", bound)
        return bound

    def _accept_loop(self, server: socket.socket, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                client, peer = server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            client.settimeout(None)
            with self._lock:
                self._clients.add(client)
            log.debug("new client connection from %s:%s", peer[0], peer[1])
            self._spawn_reader(client)

    def _close_server(self) -> None:
        server = self._server
        if server is None:
            return
        self._server_stop.set()
        server.close()
        self._server = None

    def close(self) -> None:
        """Stop monitoring and close every connection and the server."""
        self.stop_monitoring()
        with self._lock:
            sockets = list(self._connections.values()) + list(self._clients)
            self._connections.clear()
            self._clients.clear()
        for sock in sockets:
            _close_socket(sock)
        self._close_server()

    # --- node registry -----------------------------------------------------

    def add_node(self, node_id: str, node_name: str, address: str, port: int) -> NodeInfo:
        """Register a node; raises ``ValueError`` if the id is already known."""
        with self._lock:
            if node_id in self._nodes:
                raise ValueError(f"node id already exists: {node_id}")
            node = NodeInfo(node_id, node_name, str(address), int(port))
            self._nodes[node_id] = node
        log.info("added node %s (%s) %s:%s", node_name, node_id, address, port)
        return replace(node, last_metrics=dict(node.last_metrics))

    def remove_node(self, node_id: str) -> None:
        """Forget a node and drop its connection; raises ``KeyError`` if unknown."""
        with self._lock:
            if node_id not in self._nodes:
                raise KeyError(node_id)
            sock = self._connections.pop(node_id, None)
            del self._nodes[node_id]
        if sock is not None:
            _close_socket(sock)
        log.info("removed node %s", node_id)

    def connect_to_node(self, node_id: str) -> NodeStatus:
        """Open a connection to a registered node and return the resulting status."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise KeyError(node_id)
            existing = self._connections.get(node_id)
            if existing is not None:
                if existing.fileno() != -1:
                    return NodeStatus.CONNECTED
                del self._connections[node_id]
            address, port, name = node.address, node.port, node.node_name

        self.node_status_changed.emit(node_id, NodeStatus.CONNECTING)
        try:
            sock = socket.create_connection((address, port), timeout=CONNECT_TIMEOUT)
        except OSError as exc:
            log.warning("failed to connect to node %s (%s): %s", name, node_id, exc)
            self.node_status_changed.emit(node_id, NodeStatus.FAILED)
            return NodeStatus.FAILED
        sock.settimeout(None)

        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                sock.close()
                self.node_status_changed.emit(node_id, NodeStatus.FAILED)
                return NodeStatus.FAILED
            self._connections[node_id] = sock
            node.is_active = True
            node.last_seen = datetime.now()

        self._spawn_reader(sock)
        self.node_status_changed.emit(node_id, NodeStatus.CONNECTED)
        log.info("connected to node %s (%s)", name, node_id)
        return NodeStatus.CONNECTED

    def disconnect_from_node(self, node_id: str) -> None:
        """Close the connection to a node, if there is one, and mark it inactive."""
        with self._lock:
            sock = self._connections.pop(node_id, None)
            if sock is None:
                return
            node = self._nodes.get(node_id)
            if node is not None:
                node.is_active = False
        _close_socket(sock)
        if node is not None:
            self.node_status_changed.emit(node_id, NodeStatus.DISCONNECTED)
            log.info("disconnected from node %s (%s)", node.node_name, node_id)

    def _snapshot(self, predicate: Callable[[NodeInfo], bool]) -> list[NodeInfo]:
        with self._lock:
            return [
                replace(node, last_metrics=dict(node.last_metrics))
                for _, node in sorted(self._nodes.items())
                if predicate(node)
            ]

    def all_nodes(self) -> list[NodeInfo]:
        """Copies of every registered node, ordered by id."""
        return self._snapshot(lambda node: True)

    def active_nodes(self) -> list[NodeInfo]:
        """Copies of the active nodes, ordered by id."""
        return self._snapshot(lambda node: node.is_active)

    def node_metrics(self, node_id: str) -> dict[str, float]:
        """The last metrics from a node, or an empty dict for an unknown node."""
        with self._lock:
            node = self._nodes.get(node_id)
            return dict(node.last_metrics) if node is not None else {}

    def aggregated_metric(
        self, metric_name: str, kind: AggregationType = AggregationType.AVERAGE
    ) -> float:
        """Aggregate one metric across the active nodes that report it."""
        with self._lock:
            values = [
                node.last_metrics[metric_name]
                for _, node in sorted(self._nodes.items())
                if node.is_active and metric_name in node.last_metrics
            ]
        return aggregate(values, kind)

    # --- sampling ----------------------------------------------------------

    @property
    def sampling_interval(self) -> int:
        """Milliseconds between polls of the active nodes."""
        return self._sampling_interval

    def set_sampling_interval(self, msec: int) -> None:
        """Set the poll interval; values under one second are ignored."""
        if msec < MIN_SAMPLING_INTERVAL:
            log.debug("ignoring sampling interval %s ms below minimum", msec)
            return
        self._sampling_interval = msec
        if self._ticker.active:
            self._ticker.start(msec)
        log.info("sampling interval set to %s ms", msec)

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    def start_monitoring(self) -> None:
        """Start polling the active nodes, asking for data once at once."""
        if self._monitoring:
            return
        self._ticker.start(self._sampling_interval)
        self._monitoring = True
        log.info("distributed monitoring started")
        self.request_data_from_all_nodes()

    def stop_monitoring(self) -> None:
        if not self._monitoring:
            return
        self._ticker.stop()
        self._monitoring = False
        log.info("distributed monitoring stopped")

    def request_data_from_all_nodes(self) -> None:
        with self._lock:
            active = [node_id for node_id, node in sorted(self._nodes.items()) if node.is_active]
        for node_id in active:
            self.request_data_from_node(node_id)

    def request_data_from_node(self, node_id: str) -> None:
        """Send a ``getMetrics`` request to an active, connected node."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None or not node.is_active:
                return
            sock = self._connections.get(node_id)
            if sock is None:
                return
        request = {"command": "getMetrics", "timestamp": _iso_now()}
        payload = json.dumps(request, indent=4).encode("utf-8")
        try:
            sock.sendall(payload)
        except OSError as exc:
            self._handle_connection_error(sock, exc)

    # --- incoming data -----------------------------------------------------

    def _spawn_reader(self, sock: socket.socket) -> None:
        threading.Thread(target=self._read_loop, args=(sock,), daemon=True).start()

    def _read_loop(self, sock: socket.socket) -> None:
        while True:
            try:
                data = sock.recv(_RECV_SIZE)
            except OSError as exc:
                self._handle_connection_error(sock, exc)
                return
            if not data:
                self._handle_connection_error(sock, None)
                return
            try:
                self.handle_node_data(data)
            except ValueError as exc:
                log.warning("discarding node message: %s", exc)

    def _handle_connection_error(self, sock: socket.socket, error: OSError | None) -> None:
        node: NodeInfo | None = None
        with self._lock:
            node_id = next(
                (key for key, value in self._connections.items() if value is sock), None
            )
            if node_id is not None:
                del self._connections[node_id]
                node = self._nodes.get(node_id)
                if node is not None:
                    node.is_active = False
            self._clients.discard(sock)
        if error is not None:
            log.warning("connection error: %s", error)
        _close_socket(sock)
        if node_id is not None and node is not None:
            self.node_status_changed.emit(node_id, NodeStatus.FAILED)

    def handle_node_data(self, data: bytes | str) -> None:
        """Apply one metrics message from a node.

        Raises ``ValueError`` for a malformed message. Messages from unknown
        nodes are ignored.
        """
        node_id, metrics = parse_node_data(data)
        timestamp = datetime.now()
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                log.info("received data from unknown node %s", node_id)
                return
            node.is_active = True
            node.last_seen = timestamp
            node.last_metrics = dict(metrics)

        self._store_node_data(node_id, metrics, timestamp)
        self.new_data_received.emit(node_id, dict(metrics))
        for name in sorted(metrics):
            value = metrics[name]
            if _is_anomalous(name, value):
                self.anomaly_detected.emit(node_id, name, value)

    def _store_node_data(
        self, node_id: str, metrics: dict[str, float], timestamp: datetime
    ) -> None:
        if self.storage is None:
            return
        for name in sorted(metrics):
            self.storage.store_sample(f"{node_id}.{name}", metrics[name], timestamp)
        if self.analyzer is not None and "cpu" in metrics:
            self.analyzer.add_data_point(
                metrics.get("cpu", 0.0),
                metrics.get("memory", 0.0),
                metrics.get("disk", 0.0),
                metrics.get("network", 0.0),
                timestamp,
            )

    # --- reporting ---------------------------------------------------------

    def _report_text(self) -> str:
        nodes = self.all_nodes()
        lines = [
            "分布式监控报告",
            f"生成时间: {datetime.now().strftime(_REPORT_TIME_FORMAT)}",
            "",
            "监控节点信息:",
            _SEPARATOR,
        ]
        for node in nodes:
            lines += [
                f"节点ID: {node.node_id}",
                f"节点名称: {node.node_name}",
                f"IP地址: {node.address}",
                f"端口: {node.port}",
                f"状态: {'活跃' if node.is_active else '离线'}",
                f"最后通信时间: {node.last_seen.strftime(_REPORT_TIME_FORMAT)}",
            ]
            if node.last_metrics:
                lines.append("最新指标:")
                lines += [
                    f"  {name}: {node.last_metrics[name]:g}"
                    for name in sorted(node.last_metrics)
                ]
            lines.append(_SEPARATOR)

        lines += ["", "聚合指标:", _SEPARATOR]
        metric_names = list(
            dict.fromkeys(name for node in nodes for name in sorted(node.last_metrics))
        )
        labels = (
            ("平均值", AggregationType.AVERAGE),
            ("最大值", AggregationType.MAXIMUM),
            ("最小值", AggregationType.MINIMUM),
            ("中位数", AggregationType.MEDIAN),
            ("总和", AggregationType.SUM),
        )
        for name in metric_names:
            lines.append(f"{name}:")
            lines += [
                f"  {label}: {self.aggregated_metric(name, kind):g}" for label, kind in labels
            ]
            lines.append(_SEPARATOR)
        return "\n".join(lines) + "\n"

    def export_report(self, path: str | Path) -> None:
        """Write a plain-text report of the nodes and aggregated metrics to ``path``."""
        Path(path).write_text(self._report_text(), encoding="utf-8")
        log.info("distributed monitoring report written to %s", path)