import socket
import time

import pytest

from perfmesh.distributed import NodeStatus
from perfmesh.integration import (
    CompressionAlgorithm,
    MonitoringIntegration,
    RunMode,
    SamplingStrategy,
)


class FakeStorage:
    def __init__(self):
        self.exported = []
        self.samples = []

    def store_sample(self, key, value, timestamp):
        self.samples.append((key, value))

    def export_system_data(self, path):
        self.exported.append(path)


def _closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def integration():
    item = MonitoringIntegration(storage=FakeStorage())
    yield item
    item.close()


@pytest.fixture
def server(integration):
    integration.set_server_port(0)
    integration.initialize(RunMode.SERVER)
    return integration


def test_default_server_port():
    assert MonitoringIntegration().server_port == 8765


def test_standalone_lifecycle(integration):
    statuses = []
    integration.status_changed.connect(statuses.append)
    integration.initialize(RunMode.STANDALONE)
    assert statuses == ["独立模式初始化完成"]
    integration.start()
    assert integration.is_running
    integration.stop()
    assert not integration.is_running


def test_start_before_initialize_raises(integration):
    with pytest.raises(RuntimeError):
        integration.start()
    assert not integration.is_running


def test_server_mode_listens_and_adds_nodes(server):
    assert server.distributed_monitor.server_port > 0
    node = server.add_remote_node("n1", "Node one", "192.0.2.10", 9000)
    assert node.node_id == "n1"
    assert [n.node_id for n in server.distributed_monitor.all_nodes()] == ["n1"]
    with pytest.raises(ValueError):
        server.add_remote_node("n1", "Again", "192.0.2.11", 9000)


def test_add_remote_node_outside_server_mode(integration):
    integration.initialize(RunMode.STANDALONE)
    with pytest.raises(RuntimeError):
        integration.add_remote_node("n1", "Node", "192.0.2.10", 9000)


def test_client_start_fails_without_server(integration):
    integration.set_server_address("127.0.0.1", _closed_port())
    integration.initialize(RunMode.CLIENT)
    with pytest.raises(ConnectionError):
        integration.start()
    assert not integration.is_running


def test_client_start_registers_and_samples(integration):
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(5)
    try:
        integration.set_server_address("127.0.0.1", listener.getsockname()[1])
        integration.initialize(RunMode.CLIENT)
        integration.start()
        conn, _ = listener.accept()
        conn.settimeout(5)
        received = b""
        deadline = time.monotonic() + 5
        while b"registerNode" not in received and time.monotonic() < deadline:
            chunk = conn.recv(65536)
            if not chunk:
                break
            received += chunk
        assert b"registerNode" in received
        assert integration.is_running
        assert integration.monitor_node.is_sampling
        integration.stop()
        assert not integration.monitor_node.is_sampling
        conn.close()
    finally:
        listener.close()


def test_config_round_trip(tmp_path, integration):
    integration.set_server_address("10.0.0.5", 9100)
    integration.set_sampling_strategy(SamplingStrategy.DELTA_BASED)
    integration.set_compression_algorithm(CompressionAlgorithm.PIECEWISE)
    integration.set_sampling_interval(2500)
    path = tmp_path / "monitor.ini"
    integration.save_config(path)

    other = MonitoringIntegration()
    other.load_config(path)
    assert other.mode == integration.mode
    assert other.server_address == "10.0.0.5"
    assert other.server_port == 9100
    assert other.sampling == integration.sampling


def test_config_server_nodes_restored(tmp_path, server):
    server.add_remote_node("n1", "Node one", "192.0.2.10", 9000)
    server.add_remote_node("n2", "Node two", "192.0.2.11", 9001)
    path = tmp_path / "server.ini"
    server.save_config(path)

    other = MonitoringIntegration()
    try:
        other.initialize(RunMode.STANDALONE, path)
        assert other.mode is RunMode.SERVER
        restored = [(n.node_id, n.address, n.port) for n in other.distributed_monitor.all_nodes()]
        expected = [(n.node_id, n.address, n.port) for n in server.distributed_monitor.all_nodes()]
        assert restored == expected
    finally:
        other.close()


def test_load_config_missing_file(tmp_path, integration):
    with pytest.raises(FileNotFoundError):
        integration.load_config(tmp_path / "absent.ini")


def test_load_config_invalid_mode(tmp_path, integration):
    path = tmp_path / "bad.ini"
    path.write_text("[General]\nMode = 42\n", encoding="utf-8")
    with pytest.raises(ValueError):
        integration.load_config(path)


def test_export_report_standalone_uses_storage(tmp_path, integration):
    integration.initialize(RunMode.STANDALONE)
    target = tmp_path / "report.csv"
    integration.export_report(target)
    assert integration.storage.exported == [str(target)]


def test_export_report_without_storage():
    item = MonitoringIntegration()
    item.initialize(RunMode.STANDALONE)
    with pytest.raises(RuntimeError):
        item.export_report("report.csv")


def test_export_report_server_writes_file(tmp_path, server):
    server.add_remote_node("n1", "Node one", "192.0.2.10", 9000)
    target = tmp_path / "report.txt"
    server.export_report(target)
    text = target.read_text(encoding="utf-8")
    assert text.startswith("分布式监控报告")
    assert "节点ID: n1" in text


def test_sampling_interval_reaches_monitor(server):
    server.set_sampling_interval(3000)
    assert server.distributed_monitor.sampling_interval == 3000
    assert server.sampling.base_interval == 3000


def test_node_status_forwarded_as_text(server):
    statuses = []
    server.status_changed.connect(statuses.append)
    server.distributed_monitor.node_status_changed.emit("n1", NodeStatus.CONNECTED)
    assert statuses == ["节点 n1 状态变化: 已连接"]


def test_anomaly_forwarded(server):
    anomalies = []
    server.anomaly_detected.connect(lambda *args: anomalies.append(args))
    server.add_remote_node("n1", "Node one", "192.0.2.10", 9000)
    server.distributed_monitor.handle_node_data(
        '{"nodeId": "n1", "metrics": {"cpu": 95.0, "memory": 10.0}}'
    )
    assert anomalies == [("n1", "cpu", 95.0)]


def test_set_server_port_rebinds_running_server(server):
    server.start()
    server.set_server_port(0)
    assert server.server_port == 0
    assert server.distributed_monitor.server_port > 0
    assert server.distributed_monitor.is_monitoring