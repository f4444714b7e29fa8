import json
import socket
import time

import pytest

from perfmesh.monitornode import (
    DEFAULT_SAMPLING_INTERVAL,
    MonitorNode,
    NodeState,
)


@pytest.fixture
def server():
    srv = socket.create_server(("127.0.0.1", 0))
    srv.settimeout(5)
    yield srv
    srv.close()


@pytest.fixture
def node():
    n = MonitorNode("node-1", "Test Node")
    yield n
    n.close()


def _read_messages(conn, count):
    decoder = json.JSONDecoder()
    conn.settimeout(5)
    buffer = b""
    messages = []
    while len(messages) < count:
        chunk = conn.recv(65536)
        assert chunk, "connection closed before all messages arrived"
        buffer += chunk
        while True:
            text = buffer.decode("utf-8").lstrip()
            if not text:
                buffer = b""
                break
            try:
                obj, end = decoder.raw_decode(text)
            except json.JSONDecodeError:
                buffer = text.encode("utf-8")
                break
            messages.append(obj)
            buffer = text[end:].encode("utf-8")
    return messages


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_connect_sends_register_message(node, server):
    port = server.getsockname()[1]
    assert node.connect_to_server("127.0.0.1", port) is True
    conn, _ = server.accept()
    with conn:
        (message,) = _read_messages(conn, 1)
    assert message["command"] == "registerNode"
    assert message["nodeId"] == "node-1"
    assert message["nodeName"] == "Test Node"
    assert node.state is NodeState.CONNECTED


def test_state_transitions_through_connect_and_disconnect(node, server):
    states = []
    node.state_changed.connect(states.append)
    port = server.getsockname()[1]
    node.connect_to_server("127.0.0.1", port)
    conn, _ = server.accept()
    with conn:
        node.disconnect_from_server()
    assert states == [NodeState.CONNECTING, NodeState.CONNECTED, NodeState.DISCONNECTED]
    assert node.state is NodeState.DISCONNECTED


def test_connect_failure_sets_error_state(node):
    probe = socket.create_server(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    assert node.connect_to_server("127.0.0.1", port) is False
    assert node.state is NodeState.ERROR


def test_get_metrics_command_from_server_triggers_report(node, server):
    port = server.getsockname()[1]
    assert node.connect_to_server("127.0.0.1", port) is True
    conn, _ = server.accept()
    with conn:
        _read_messages(conn, 1)
        conn.sendall(json.dumps({"command": "getMetrics"}).encode("utf-8"))
        (message,) = _read_messages(conn, 1)
    assert message["command"] == "metrics"
    assert message["nodeId"] == "node-1"
    collected = node.metrics()
    assert set(collected) >= {"cpu", "memory", "disk", "network"}
    assert message["metrics"] == collected


def test_remote_close_sets_error_state(node, server):
    port = server.getsockname()[1]
    assert node.connect_to_server("127.0.0.1", port) is True
    conn, _ = server.accept()
    _read_messages(conn, 1)
    conn.close()
    _wait_for(lambda: node.state is NodeState.ERROR)
    assert node.state is NodeState.ERROR
    assert node.send_metrics() is False


def test_send_metrics_when_disconnected_does_nothing(node):
    assert node.send_metrics() is False
    assert node.metrics() == {}


def test_set_sampling_interval_via_command(node):
    assert node.sampling_interval == DEFAULT_SAMPLING_INTERVAL
    command = node.handle_command(
        json.dumps({"command": "setSamplingInterval", "params": {"interval": 2000}})
    )
    assert command == "setSamplingInterval"
    assert node.sampling_interval == 2000


def test_sampling_interval_below_minimum_is_ignored(node):
    node.set_sampling_interval(2500)
    node.set_sampling_interval(500)
    assert node.sampling_interval == 2500


@pytest.mark.parametrize(
    "payload",
    [b"not json", b"[1, 2, 3]", json.dumps({"params": {}}).encode("utf-8")],
)
def test_malformed_commands_raise(node, payload):
    with pytest.raises(ValueError):
        node.handle_command(payload)


def test_command_received_signal_carries_params(node):
    received = []
    node.command_received.connect(lambda cmd, params: received.append((cmd, params)))
    node.handle_command(json.dumps({"command": "custom", "params": {"x": 1}}))
    node.handle_command(json.dumps({"command": "other", "params": "ignored"}))
    assert received == [("custom", {"x": 1}), ("other", {})]


def test_start_and_stop_sampling_commands(node):
    node.handle_command(json.dumps({"command": "startSampling"}))
    assert node.is_sampling is True
    assert "cpu" in node.metrics()
    node.handle_command(json.dumps({"command": "stopSampling"}))
    assert node.is_sampling is False


def test_add_and_remove_metric(node):
    node.add_metric("temperature", 55.5)
    node.add_metric("fan", 3)
    snapshot = node.metrics()
    snapshot["fan"] = 99.0
    assert node.metrics() == {"temperature": 55.5, "fan": 3.0}
    node.remove_metric("fan")
    node.remove_metric("missing")
    assert node.metrics() == {"temperature": 55.5}


def test_metrics_message_structure(node):
    node.add_metric("cpu", 42.0)
    message = node.metrics_message()
    assert message["command"] == "metrics"
    assert message["nodeId"] == "node-1"
    assert message["metrics"] == {"cpu": 42.0}
    assert "timestamp" in message


def test_collect_system_metrics_ranges(node):
    for _ in range(50):
        node.collect_system_metrics()
        metrics = node.metrics()
        assert set(metrics) == {"cpu", "memory", "disk", "network"}
        assert 0 <= metrics["cpu"] < 100
        assert 0 <= metrics["memory"] < 100
        assert 0 <= metrics["disk"] < 100
        assert 0 <= metrics["network"] < 1000


def test_default_node_id_uses_hostname():
    with MonitorNode() as default_node:
        prefix = socket.gethostname() + "-"
        assert default_node.node_id.startswith(prefix)
        suffix = default_node.node_id[len(prefix):]
        assert suffix.isdigit() and 0 <= int(suffix) < 10000
        assert default_node.node_name


def test_set_node_info(node):
    node.set_node_info("node-2", "Renamed")
    assert (node.node_id, node.node_name) == ("node-2", "Renamed")
    assert node.metrics_message()["nodeId"] == "node-2"