# perfmesh

Performance monitoring that runs alone or across several machines, using
only the Python standard library.

- **Server** mode (`perfmesh.distributed.DistributedMonitor`) keeps a list of
  remote nodes, connects to them over TCP, asks them for their latest
  metrics with a `getMetrics` message and aggregates one metric across the
  active nodes (`AggregationType.SUM`, `AVERAGE`, `MAXIMUM`, `MINIMUM`,
  `MEDIAN`). A metric whose name contains `cpu` or `memory` above 90, or
  `disk` above 95, is reported through the `anomaly_detected` callbacks.
- **Client** mode (`perfmesh.monitornode.MonitorNode`) connects to a server,
  registers itself and sends its metrics on request or at a fixed interval.
  It also obeys `setSamplingInterval`, `startSampling` and `stopSampling`
  commands.
- **Standalone** mode runs without network peers.

`perfmesh.integration.MonitoringIntegration` drives the three modes, reads
and writes INI configuration files and forwards status and anomaly events.

The package also contains:

- `perfmesh.blockchain`: a hash-linked chain of SHA-256 blocks
  (`Block`, `Blockchain`) with JSON export and verified import; a bad
  document raises `ChainError`.
- `perfmesh.metrics3d`: `MetricsView`, which keeps the last 100 CPU, GPU,
  memory, disk and network readings, renders display labels and builds bar
  data for the ten most recent aligned samples; and `format_memory_size`.

## Installation

```
pip install .
```

## Command line

```
perfmesh --mode standalone
perfmesh --mode server --port 8765
perfmesh --mode client --server 127.0.0.1 --port 8765 --interval 5000
perfmesh --config monitoring.ini
perfmesh --mode server --duration 30
```

Options:

- `-m/--mode`: `server`, `client` or `standalone`; any other value means
  standalone (default `standalone`)
- `-s/--server`: server address used in client mode (default `127.0.0.1`)
- `-p/--port`: server port (default `8765`)
- `-i/--interval`: sampling interval in milliseconds (default `5000`);
  intervals under 1000 ms are ignored by the server and the node
- `--strategy`: sampling strategy number, 0–3 (default `0`)
- `--compression`: compression algorithm number, 0–3 (default `0`)
- `-c/--config`: INI file to load; when given, the other settings above are
  taken from the file instead of the command line
- `--duration`: stop after this many seconds instead of waiting for Ctrl+C
- `-v/--version`: print the version

Status and anomaly messages are printed to standard error. In server mode
two test nodes (`192.168.1.100:8766` and `192.168.1.101:8766`) are added one
second after start, and a report `monitoring_report_<timestamp>.txt` is
written every 60 seconds. The command exits with status 1 if initialisation
or start fails (for example when the port cannot be bound or a client cannot
reach its server).

## Configuration file

```ini
[General]
Mode = 0

[Server]
Address = 127.0.0.1
Port = 8765

[Sampling]
Interval = 5000
Strategy = 0
Compression = 0

[Nodes]
Count = 1
Node0\Id = node-1
Node0\Name = Build host
Node0\Address = 127.0.0.1
Node0\Port = 8766
```

`Mode` is 0 for server, 1 for client and 2 for standalone. The `Nodes`
section is read only in server mode; entries without an id, a name, a valid
IP address or a positive port are skipped. `MonitoringIntegration.save_config`
writes the same layout.

## Library use

```python
from perfmesh.distributed import DistributedMonitor, AggregationType

monitor = DistributedMonitor()
monitor.add_node("node-1", "Build host", "127.0.0.1", 8766)
monitor.handle_node_data(b'{"nodeId": "node-1", "metrics": {"cpu": 42.0}}')
print(monitor.aggregated_metric("cpu", AggregationType.AVERAGE))  # 42.0
monitor.export_report("report.txt")
```

`DistributedMonitor` accepts an optional `storage` object with a
`store_sample(key, value, timestamp)` method and an optional `analyzer` with
`add_data_point(cpu, memory, disk, network, timestamp)`; received metrics are
passed to them when given.

```python
from perfmesh.blockchain import Blockchain

chain = Blockchain()
chain.add_block("cpu=42.0")
assert chain.is_chain_valid()
restored = Blockchain()
restored.from_json(chain.to_json())
```

## What it does not do

- A client node does not read the real machine: its `cpu`, `memory`, `disk`
  and `network` metrics are simulated random values. Real readings can be
  supplied with `MonitorNode.add_metric`.
- There is no storage backend. Outside server mode, `export_report` needs a
  storage object with `export_system_data(path)` passed to
  `MonitoringIntegration`; the command line passes none, so it writes no
  reports in client or standalone mode.
- The sampling strategy and compression settings are recorded and saved in
  the configuration, but no adaptive sampling or data compression is
  performed.
- There is no graphical interface; `MetricsView` only prepares labels and
  bar data.

## Running the tests

```
pip install .[test]
pytest
```