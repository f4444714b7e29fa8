"""Rolling metric histories and the label and bar data derived from them."""

from __future__ import annotations

from collections import deque

HISTORY_LIMIT = 100
ENTITY_POINTS = 10

_KIB = 1024
_MIB = 1024 * 1024
_GIB = 1024 * 1024 * 1024


def format_memory_size(num_bytes: int) -> str:
    """Render a byte count as B, KB, MB or GB with two decimals above bytes."""
    if num_bytes >= _GIB:
        return f"{num_bytes / _GIB:.2f} GB"
    if num_bytes >= _MIB:
        return f"{num_bytes / _MIB:.2f} MB"
    if num_bytes >= _KIB:
        return f"{num_bytes / _KIB:.2f} KB"
    return f"{num_bytes} B"


class MetricsView:
    """Tracks recent CPU, GPU, memory, disk and network readings."""

    def __init__(self) -> None:
        self.cpu_usage = 0.0
        self.gpu_usage = 0.0
        self.gpu_temperature = 0.0
        self.gpu_memory_used = 0
        self.gpu_memory_total = 0
        self.memory_usage = 0.0
        self.disk_usage = 0.0
        self.network_usage = 0.0

        self._cpu: deque[float] = deque(maxlen=HISTORY_LIMIT)
        self._gpu: deque[float] = deque(maxlen=HISTORY_LIMIT)
        self._memory: deque[float] = deque(maxlen=HISTORY_LIMIT)
        self._disk: deque[float] = deque(maxlen=HISTORY_LIMIT)
        self._network: deque[float] = deque(maxlen=HISTORY_LIMIT)

        self._labels = {
            "cpu": "CPU: 0.0%",
            "gpu": "GPU: 0% | 0°C | 0/0",
            "memory": "内存: 0.0%",
            "disk": "磁盘: 0.0 MB/s",
            "network": "网络: 0.0 MB/s",
        }

    @property
    def cpu_history(self) -> tuple[float, ...]:
        return tuple(self._cpu)

    @property
    def gpu_history(self) -> tuple[float, ...]:
        return tuple(self._gpu)

    @property
    def memory_history(self) -> tuple[float, ...]:
        return tuple(self._memory)

    @property
    def disk_history(self) -> tuple[float, ...]:
        return tuple(self._disk)

    @property
    def network_history(self) -> tuple[float, ...]:
        return tuple(self._network)

    def update_cpu(self, usage: float) -> None:
        self.cpu_usage = usage
        self._cpu.append(usage)
        self._labels["cpu"] = f"CPU: {usage:.1f}%"

    def update_gpu(
        self, usage: float, temperature: float, memory_used: int, memory_total: int
    ) -> None:
        self.gpu_usage = usage
        self.gpu_temperature = temperature
        self.gpu_memory_used = memory_used
        self.gpu_memory_total = memory_total
        self._gpu.append(usage)
        self._labels["gpu"] = (
            f"GPU: {usage:.1f}%% | {temperature:.1f}°C | "
            f"{memory_used // _MIB}/{memory_total // _MIB} MB"
        )

    def update_memory(self, used: float, total: float) -> None:
        """Record memory use as a percentage of ``total``."""
        self.memory_usage = used / total * 100.0 if total > 0 else 0.0
        self._memory.append(self.memory_usage)
        self._labels["memory"] = f"内存: {self.memory_usage:.1f}%"

    def update_disk(self, usage: float) -> None:
        self.disk_usage = usage
        self._disk.append(usage)
        self._labels["disk"] = f"磁盘: {usage:.1f} MB/s"

    def update_network(self, usage: float) -> None:
        self.network_usage = usage
        self._network.append(usage)
        self._labels["network"] = f"网络: {usage:.1f} MB/s"

    def labels(self) -> dict[str, str]:
        """Current display text for each metric."""
        return dict(self._labels)

    def entities(self) -> list[dict[str, object]]:
        """Bar data for the most recent aligned CPU, GPU, memory and disk samples.

        Takes the last ``ENTITY_POINTS`` samples of each series and emits as
        many time steps as the shortest of them holds.
        """
        series = (
            ("CPU", list(self._cpu)[-ENTITY_POINTS:]),
            ("GPU", list(self._gpu)[-ENTITY_POINTS:]),
            ("内存", list(self._memory)[-ENTITY_POINTS:]),
            ("磁盘", list(self._disk)[-ENTITY_POINTS:]),
        )
        steps = min(len(values) for _, values in series)
        return [
            {"time": f"T-{step}", "type": kind, "value": values[step]}
            for step in range(steps)
            for kind, values in series
        ]