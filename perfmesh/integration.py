"""Ties the distributed monitor, the reporting node and sampling settings together."""

from __future__ import annotations

import configparser
import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Protocol

from perfmesh.distributed import (
    DEFAULT_PORT,
    DistributedMonitor,
    NodeInfo,
    NodeStatus,
    _Signal,
)
from perfmesh.monitornode import MonitorNode

log = logging.getLogger(__name__)

DEFAULT_SERVER_ADDRESS = "127.0.0.1"
DEFAULT_SAMPLING_INTERVAL = 5000

_STATUS_TEXT = {
    NodeStatus.CONNECTED: "已连接",
    NodeStatus.DISCONNECTED: "已断开",
    NodeStatus.CONNECTING: "连接中",
    NodeStatus.FAILED: "连接失败",
}


class RunMode(IntEnum):
    """Role the monitoring system plays."""

    SERVER = 0
    CLIENT = 1
    STANDALONE = 2


class SamplingStrategy(IntEnum):
    """When samples are taken."""

    FIXED_RATE = 0
    ADAPTIVE_RATE = 1
    EVENT_BASED = 2
    DELTA_BASED = 3


class CompressionAlgorithm(IntEnum):
    """How stored history is compressed."""

    NONE = 0
    RUN_LENGTH = 1
    DELTA_ENCODING = 2
    PIECEWISE = 3


class _Storage(Protocol):
    def store_sample(self, key: str, value: float, timestamp: datetime) -> None: ...

    def export_system_data(self, path: str) -> None: ...


@dataclass
class SamplingSettings:
    """Sampling strategy, compression and base interval in milliseconds."""

    strategy: SamplingStrategy = SamplingStrategy.FIXED_RATE
    compression: CompressionAlgorithm = CompressionAlgorithm.NONE
    base_interval: int = DEFAULT_SAMPLING_INTERVAL


@dataclass(frozen=True)
class _ConfiguredNode:
    node_id: str
    node_name: str
    address: str
    port: int


def _is_ip_address(text: str) -> bool:
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def _node_key(index: int, name: str) -> str:
    return f"Node{index}\\{name}"


class MonitoringIntegration:
    """Runs the monitoring system as a server, a reporting client or standalone.

    Callbacks may be attached to ``status_changed`` (text) and
    ``anomaly_detected`` (source, metric_name, value).
    """

    def __init__(self, storage: _Storage | None = None) -> None:
        self.storage = storage
        self.mode = RunMode.STANDALONE
        self.server_address = DEFAULT_SERVER_ADDRESS
        self.server_port = DEFAULT_PORT
        self.sampling = SamplingSettings()

        self.status_changed = _Signal()
        self.anomaly_detected = _Signal()

        self.distributed_monitor: DistributedMonitor | None = None
        self.monitor_node: MonitorNode | None = None

        self._initialized = False
        self._running = False
        self._configured_nodes: list[_ConfiguredNode] = []

    def __enter__(self) -> MonitoringIntegration:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_running(self) -> bool:
        return self._running

    # --- lifecycle ---------------------------------------------------------

    def initialize(self, mode: RunMode, config_file: str | Path | None = None) -> None:
        """Prepare the components for ``mode``.

        A configuration file, if given, is read first and its mode takes
        precedence. Raises ``OSError`` if the server cannot listen.
        """
        self.mode = RunMode(mode)
        if self._running:
            self.stop()
        if config_file:
            self.load_config(config_file)

        if self.mode is RunMode.SERVER:
            if self.distributed_monitor is None:
                monitor = DistributedMonitor(storage=self.storage)
                monitor.anomaly_detected.connect(self._handle_distributed_anomaly)
                monitor.node_status_changed.connect(self._handle_node_status_changed)
                self.distributed_monitor = monitor
                self._register_configured_nodes()
            self.distributed_monitor.init_server(self.server_port)
            self.status_changed.emit(f"服务器模式初始化完成，监听端口: {self.server_port}")
        elif self.mode is RunMode.CLIENT:
            if self.monitor_node is None:
                self.monitor_node = MonitorNode()
            self.status_changed.emit("客户端模式初始化完成")
        else:
            self.status_changed.emit("独立模式初始化完成")
        self._initialized = True

    def start(self) -> None:
        """Start monitoring in the configured mode.

        Raises ``RuntimeError`` before ``initialize`` and ``ConnectionError``
        when a client cannot reach its server.
        """
        if self._running:
            log.info("monitoring is already running")
            return
        if not self._initialized:
            raise RuntimeError("monitoring system is not initialised")

        if self.mode is RunMode.SERVER:
            if self.distributed_monitor is None:
                raise RuntimeError("no distributed monitor to start")
            self.distributed_monitor.start_monitoring()
            self.status_changed.emit("分布式监控服务器已启动")
        elif self.mode is RunMode.CLIENT:
            if self.monitor_node is None:
                raise RuntimeError("no monitoring node to start")
            if not self.monitor_node.connect_to_server(self.server_address, self.server_port):
                self.status_changed.emit("连接到监控服务器失败")
                raise ConnectionError(
                    f"cannot reach monitoring server {self.server_address}:{self.server_port}"
                )
            self.monitor_node.start_sampling()
            self.status_changed.emit("已连接到监控服务器并开始数据采集")
        else:
            self.status_changed.emit("独立监控已启动")
        self._running = True

    def stop(self) -> None:
        """Stop monitoring; does nothing when not running."""
        if not self._running:
            return
        if self.mode is RunMode.SERVER:
            if self.distributed_monitor is not None:
                self.distributed_monitor.stop_monitoring()
                self.status_changed.emit("分布式监控服务器已停止")
        elif self.mode is RunMode.CLIENT:
            if self.monitor_node is not None:
                self.monitor_node.stop_sampling()
                self.monitor_node.disconnect_from_server()
                self.status_changed.emit("已停止数据采集并断开与监控服务器的连接")
        else:
            self.status_changed.emit("独立监控已停止")
        self._running = False

    def close(self) -> None:
        """Stop and release every component."""
        self.stop()
        if self.distributed_monitor is not None:
            self.distributed_monitor.close()
            self.distributed_monitor = None
        if self.monitor_node is not None:
            self.monitor_node.close()
            self.monitor_node = None
        self._initialized = False

    # --- settings ----------------------------------------------------------

    def set_server_address(self, address: str, port: int) -> None:
        self.server_address = str(address)
        self.server_port = int(port)
        log.info("server address set to %s:%s", address, port)

    def set_server_port(self, port: int) -> None:
        """Set the listening port, rebinding a running server at once."""
        self.server_port = int(port)
        monitor = self.distributed_monitor
        if self.mode is RunMode.SERVER and self._running and monitor is not None:
            monitor.stop_monitoring()
            monitor.init_server(self.server_port)
            monitor.start_monitoring()
        log.info("server port set to %s", port)

    def add_remote_node(
        self, node_id: str, node_name: str, address: str, port: int
    ) -> NodeInfo:
        """Register a remote node with the server, connecting if running.

        Raises ``RuntimeError`` outside server mode and ``ValueError`` for a
        duplicate id.
        """
        monitor = self.distributed_monitor
        if self.mode is not RunMode.SERVER or monitor is None:
            raise RuntimeError("remote nodes can only be added in server mode")
        node = monitor.add_node(node_id, node_name, address, port)
        if self._running:
            monitor.connect_to_node(node_id)
        log.info("added remote node %s (%s) %s:%s", node_name, node_id, address, port)
        return node

    def set_sampling_strategy(self, strategy: SamplingStrategy) -> None:
        self.sampling.strategy = SamplingStrategy(strategy)

    def set_compression_algorithm(self, algorithm: CompressionAlgorithm) -> None:
        self.sampling.compression = CompressionAlgorithm(algorithm)

    def set_sampling_interval(self, msec: int) -> None:
        """Set the base interval and pass it to the active component."""
        self.sampling.base_interval = int(msec)
        if self.mode is RunMode.SERVER and self.distributed_monitor is not None:
            self.distributed_monitor.set_sampling_interval(msec)
        elif self.mode is RunMode.CLIENT and self.monitor_node is not None:
            self.monitor_node.set_sampling_interval(msec)
        log.info("sampling interval set to %s ms", msec)

    # --- reporting ---------------------------------------------------------

    def export_report(self, path: str | Path) -> None:
        """Write a report to ``path``: a node report in server mode, stored data otherwise."""
        if self.mode is RunMode.SERVER:
            if self.distributed_monitor is None:
                raise RuntimeError("no distributed monitor to report on")
            self.distributed_monitor.export_report(path)
            return
        if self.storage is None:
            raise RuntimeError("no data storage to export from")
        self.storage.export_system_data(str(path))

    # --- events ------------------------------------------------------------

    def _handle_distributed_anomaly(self, node_id: str, metric_name: str, value: float) -> None:
        log.warning("distributed anomaly: %s %s %s", node_id, metric_name, value)
        self.anomaly_detected.emit(node_id, metric_name, value)

    def _handle_node_status_changed(self, node_id: str, status: NodeStatus) -> None:
        text = _STATUS_TEXT.get(NodeStatus(status), "")
        self.status_changed.emit(f"节点 {node_id} 状态变化: {text}")

    # --- configuration -----------------------------------------------------

    def _register_configured_nodes(self) -> None:
        monitor = self.distributed_monitor
        if monitor is None:
            return
        for node in self._configured_nodes:
            try:
                monitor.add_node(node.node_id, node.node_name, node.address, node.port)
            except ValueError:
                log.debug("configured node %s already registered", node.node_id)

    def load_config(self, config_file: str | Path) -> None:
        """Read mode, server, sampling and node settings from an INI file.

        Raises ``FileNotFoundError`` for a missing file and ``ValueError`` for
        malformed contents.
        """
        path = Path(config_file)
        if not path.is_file():
            raise FileNotFoundError(str(path))
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str  # type: ignore[assignment, method-assign]
        try:
            parser.read(path, encoding="utf-8")
            self.mode = RunMode(parser.getint("General", "Mode", fallback=RunMode.STANDALONE))
            self.server_address = parser.get(
                "Server", "Address", fallback=DEFAULT_SERVER_ADDRESS
            )
            self.server_port = parser.getint("Server", "Port", fallback=DEFAULT_PORT)
            self.sampling = SamplingSettings(
                strategy=SamplingStrategy(
                    parser.getint("Sampling", "Strategy", fallback=SamplingStrategy.FIXED_RATE)
                ),
                compression=CompressionAlgorithm(
                    parser.getint("Sampling", "Compression", fallback=CompressionAlgorithm.NONE)
                ),
                base_interval=parser.getint(
                    "Sampling", "Interval", fallback=DEFAULT_SAMPLING_INTERVAL
                ),
            )
            nodes: list[_ConfiguredNode] = []
            if self.mode is RunMode.SERVER:
                count = parser.getint("Nodes", "Count", fallback=0)
                for index in range(count):
                    node_id = parser.get("Nodes", _node_key(index, "Id"), fallback="")
                    node_name = parser.get("Nodes", _node_key(index, "Name"), fallback="")
                    address = parser.get("Nodes", _node_key(index, "Address"), fallback="")
                    port = parser.getint("Nodes", _node_key(index, "Port"), fallback=0)
                    if node_id and node_name and _is_ip_address(address) and port > 0:
                        nodes.append(_ConfiguredNode(node_id, node_name, address, port))
        except (configparser.Error, ValueError) as exc:
            raise ValueError(f"invalid configuration file {path}: {exc}") from exc

        self._configured_nodes = nodes
        self._register_configured_nodes()
        log.info("settings loaded from %s", path)

    def save_config(self, config_file: str | Path) -> None:
        """Write the current settings, and in server mode the nodes, to an INI file."""
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str  # type: ignore[assignment, method-assign]
        parser["General"] = {"Mode": str(int(self.mode))}
        parser["Server"] = {"Address": self.server_address, "Port": str(self.server_port)}
        parser["Sampling"] = {
            "Interval": str(self.sampling.base_interval),
            "Strategy": str(int(self.sampling.strategy)),
            "Compression": str(int(self.sampling.compression)),
        }
        if self.mode is RunMode.SERVER and self.distributed_monitor is not None:
            nodes = self.distributed_monitor.all_nodes()
            section = {"Count": str(len(nodes))}
            for index, node in enumerate(nodes):
                section[_node_key(index, "Id")] = node.node_id
                section[_node_key(index, "Name")] = node.node_name
                section[_node_key(index, "Address")] = node.address
                section[_node_key(index, "Port")] = str(node.port)
            parser["Nodes"] = section
        with Path(config_file).open("w", encoding="utf-8") as handle:
            parser.write(handle)
        log.info("settings saved to %s", config_file)