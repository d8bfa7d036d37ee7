# etcdbr

Building blocks for checking and maintaining etcd data directories and backups.
The package has no dependencies outside the standard library.

## Modules

- `etcdbr.validator` — checks an etcd data directory. `DataValidator(ValidatorConfig(data_dir, snapstore=None))`
  and its `validate(mode)` method look at whether the directory exists, whether it has the
  `member/snap` and `member/wal` layout, whether the revision in `member/snap/db` is behind the
  latest snapshot in the configured store, and, in `Mode.FULL`, whether the snapshot files, the
  write-ahead log and the database file are intact. A truncated last WAL file is repaired once
  (the original is kept as `<name>.broken`). The result is a `DataDirStatus`:
  `DATA_DIRECTORY_VALID`, `DATA_DIRECTORY_INV_STRUCT`, `DATA_DIRECTORY_CORRUPT` or
  `REVISION_CONSISTENCY_ERROR`. A missing or unreadable directory raises `ValidationFailed`,
  whose `status` is `DATA_DIRECTORY_NOT_EXIST` or `DATA_DIRECTORY_ERROR`.
  The module also offers `directory_exist`, `is_dir_empty`, `check_suffix`, `read_snapshot`,
  `verify_db`, `get_latest_etcd_revision` and `check_revision_consistency`.
- `etcdbr.snapshots` — `get_latest_full_snapshot_and_delta_snap_list(store)` returns the latest
  full snapshot in a store and the sorted delta snapshots taken after it, skipping chunks.
- `etcdbr.tlsconfig` — `TLSConfig` holds certificate files, transport and verification
  settings, endpoints and credentials; `build_client_config` turns it into a `ClientConfig`
  with an `ssl.SSLContext` (or none for insecure transport).
- `etcdbr.defrag` — `defrag_data(tls_config, connection_timeout, client_factory)` defragments
  each endpoint through a client built by your factory, recording durations in the
  defragmentation histogram and raising `EtcdError` on failure.
  `defrag_data_periodically(stop_event, ...)` repeats this every `period` seconds until
  `stop_event` (for example a `threading.Event`) is set, calling `callback` after each
  successful pass.
- `etcdbr.metrics` — thread-safe `Counter`, `Gauge` and `Histogram`, label families
  (`MetricVec.with_labels`, `MetricVec.samples`), a `Registry` with `register` and `collect`,
  and `initialize_metrics(registry)`, which registers the backup metrics with every label
  combination created at zero. `DEFAULT_REGISTRY` is initialised on import.
- `etcdbr.network` — `get_network_transmitted_bytes` and `get_network_received_bytes` sum the
  byte counts of a `/proc/<pid>/net/dev` style file (NaN when it cannot be read);
  on Linux the matching `CounterFunc` metrics are registered in `DEFAULT_REGISTRY`.
- `etcdbr.errors` — `EtcdError` and `SnapstoreError`.

## Interfaces you supply

- A snapshot store is any object whose `list()` returns snapshots in store order; each
  snapshot has `kind` (`"Full"`, `"Incr"` or `"Chunk"`), `is_chunk` and `last_revision`,
  and snapshots sort chronologically.
- An etcd client, built by `client_factory(client_config)`, offers
  `status(endpoint, timeout)` returning a `MemberStatus`, `defragment(endpoint, timeout)` and
  `close()`.

## What it does not do

There is no command-line tool, no snapshotting of a running etcd, no restore of a data
directory from snapshots, no snapshot store implementation, no etcd client and no HTTP
endpoint serving the metrics. Those are left to the code that uses this package.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from etcdbr.validator import DataDirStatus, DataValidator, Mode, ValidationFailed, ValidatorConfig

validator = DataValidator(ValidatorConfig(data_dir="/var/etcd/data"))
try:
    status = validator.validate(Mode.SANITY)
except ValidationFailed as err:
    status = err.status
if status is not DataDirStatus.DATA_DIRECTORY_VALID:
    print("data directory needs restoring:", status.name)
```