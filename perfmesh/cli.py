"""Command-line entry point that runs the monitoring system in one of its modes."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from collections.abc import Sequence
from datetime import datetime

from perfmesh.distributed import DEFAULT_PORT, _Ticker
from perfmesh.integration import (
    DEFAULT_SAMPLING_INTERVAL,
    DEFAULT_SERVER_ADDRESS,
    CompressionAlgorithm,
    MonitoringIntegration,
    RunMode,
    SamplingStrategy,
)

log = logging.getLogger(__name__)

APP_VERSION = "1.0"
REPORT_INTERVAL_MS = 60000
TEST_NODE_DELAY = 1.0

_TEST_NODES = (
    ("test-node-1", "测试节点1", "192.168.1.100", 8766),
    ("test-node-2", "测试节点2", "192.168.1.101", 8766),
)

_MODES = {"server": RunMode.SERVER, "client": RunMode.CLIENT}


def _parse_mode(text: str) -> RunMode:
    """Map a mode name to a run mode; anything unknown means standalone."""
    return _MODES.get(text, RunMode.STANDALONE)


def _parse_strategy(text: str) -> SamplingStrategy:
    return SamplingStrategy(int(text))


def _parse_compression(text: str) -> CompressionAlgorithm:
    return CompressionAlgorithm(int(text))


def build_parser() -> argparse.ArgumentParser:
    """The argument parser for the monitoring command."""
    parser = argparse.ArgumentParser(
        prog="perfmesh", description="分布式性能监控系统示例程序"
    )
    parser.add_argument(
        "-v", "--version", action="version", version=f"%(prog)s {APP_VERSION}"
    )
    parser.add_argument(
        "-m",
        "--mode",
        type=_parse_mode,
        default="standalone",
        metavar="mode",
        help="运行模式 (server, client, standalone)",
    )
    parser.add_argument(
        "-s",
        "--server",
        default=DEFAULT_SERVER_ADDRESS,
        metavar="address",
        help="服务器地址",
    )
    parser.add_argument(
        "-p", "--port", type=int, default=DEFAULT_PORT, metavar="port", help="服务器端口号"
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=int,
        default=DEFAULT_SAMPLING_INTERVAL,
        metavar="interval",
        help="采样间隔（毫秒）",
    )
    parser.add_argument(
        "--strategy",
        type=_parse_strategy,
        default="0",
        metavar="strategy",
        help="采样策略 (0=固定, 1=自适应, 2=事件, 3=变化量)",
    )
    parser.add_argument(
        "--compression",
        type=_parse_compression,
        default="0",
        metavar="compression",
        help="压缩算法 (0=无压缩, 1=游程, 2=增量, 3=分段线性)",
    )
    parser.add_argument("-c", "--config", default=None, metavar="config", help="配置文件路径")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        metavar="seconds",
        help="stop after this many seconds (default: run until interrupted)",
    )
    return parser


def _say(text: str) -> None:
    print(text, file=sys.stderr, flush=True)


def _add_test_nodes(integration: MonitoringIntegration) -> None:
    for node_id, name, address, port in _TEST_NODES:
        try:
            integration.add_remote_node(node_id, name, address, port)
        except (RuntimeError, ValueError, OSError) as exc:
            log.warning("could not add test node %s: %s", node_id, exc)


def _export_periodic_report(integration: MonitoringIntegration) -> None:
    path = f"monitoring_report_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
    try:
        integration.export_report(path)
    except (RuntimeError, OSError) as exc:
        log.debug("report not written: %s", exc)
        return
    _say(f"报告已生成： {path}")


def _configure(integration: MonitoringIntegration, args: argparse.Namespace) -> None:
    if args.config:
        integration.initialize(args.mode, args.config)
        return
    integration.initialize(args.mode)
    if args.mode is RunMode.CLIENT:
        integration.set_server_address(args.server, args.port)
    elif args.mode is RunMode.SERVER:
        integration.set_server_port(args.port)
    integration.set_sampling_interval(args.interval)
    integration.set_sampling_strategy(args.strategy)
    integration.set_compression_algorithm(args.compression)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the monitoring system until interrupted; return the exit status."""
    args = build_parser().parse_args(argv)

    integration = MonitoringIntegration()
    integration.status_changed.connect(lambda status: _say(f"[状态] {status}"))
    integration.anomaly_detected.connect(
        lambda source, metric, value: _say(f"[异常] {source} {metric} {value}")
    )

    try:
        _configure(integration, args)
    except (OSError, ValueError) as exc:
        log.debug("initialisation failed: %s", exc)
        _say("初始化失败！")
        integration.close()
        return 1

    try:
        integration.start()
    except (OSError, RuntimeError) as exc:
        log.debug("start failed: %s", exc)
        _say("启动失败！")
        integration.close()
        return 1

    _say("监控系统已启动，按Ctrl+C退出...")

    node_timer: threading.Timer | None = None
    if integration.mode is RunMode.SERVER:
        node_timer = threading.Timer(TEST_NODE_DELAY, _add_test_nodes, args=(integration,))
        node_timer.daemon = True
        node_timer.start()

    reporter = _Ticker(lambda: _export_periodic_report(integration))
    reporter.start(REPORT_INTERVAL_MS)

    stop = threading.Event()
    try:
        if args.duration is None:
            while not stop.wait(1.0):
                pass
        else:
            stop.wait(max(args.duration, 0.0))
    except KeyboardInterrupt:
        pass
    finally:
        if node_timer is not None:
            node_timer.cancel()
        reporter.stop()
        integration.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())