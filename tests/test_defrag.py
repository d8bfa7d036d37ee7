import pytest

from etcdbr.defrag import MemberStatus, defrag_data, defrag_data_periodically
from etcdbr.errors import EtcdError
from etcdbr.metrics import DEFRAGMENTATION_DURATION_SECONDS, LABEL_SUCCEEDED
from etcdbr.tlsconfig import TLSConfig

ENDPOINTS = ["http://localhost:2379"]


class FakeCluster:
    def __init__(self, endpoints, db_size=4096, revision=1002, defrag_seconds=0.5):
        self.members = {ep: [db_size, revision] for ep in endpoints}
        self.defrag_seconds = defrag_seconds
        self.configs = []
        self.clients = []
        self.status_fails = False
        self.defrag_calls = 0

    def factory(self, config):
        self.configs.append(config)
        client = FakeClient(self)
        self.clients.append(client)
        return client

    def status(self, endpoint):
        size, revision = self.members[endpoint]
        return MemberStatus(db_size=size, revision=revision)


class FakeClient:
    def __init__(self, cluster):
        self.cluster = cluster
        self.closed = False

    def status(self, endpoint, timeout):
        if self.cluster.status_fails:
            raise ConnectionError("unavailable")
        return self.cluster.status(endpoint)

    def defragment(self, endpoint, timeout):
        self.cluster.defrag_calls += 1
        if timeout < self.cluster.defrag_seconds:
            raise TimeoutError("context deadline exceeded")
        self.cluster.members[endpoint][0] //= 2

    def close(self):
        self.closed = True


class CountingStop:
    """Stop event that reports 'not set' a fixed number of times."""

    def __init__(self, rounds):
        self.rounds = rounds
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self.rounds == 0:
            return True
        self.rounds -= 1
        return False


def _tls():
    return TLSConfig(insecure_transport=True, skip_verify=True, endpoints=list(ENDPOINTS))


def _histogram_count(value):
    return DEFRAGMENTATION_DURATION_SECONDS.with_labels({LABEL_SUCCEEDED: value}).count


def test_defragment_reduces_db_size_and_keeps_revision():
    cluster = FakeCluster(ENDPOINTS)
    old = cluster.status(ENDPOINTS[0])
    before = _histogram_count("true")
    defrag_data(_tls(), 30.0, cluster.factory)
    new = cluster.status(ENDPOINTS[0])
    assert new.db_size < old.db_size
    assert new.revision == old.revision
    assert _histogram_count("true") == before + 1
    assert cluster.clients[0].closed


def test_timeout_keeps_size_and_raises():
    cluster = FakeCluster(ENDPOINTS)
    old = cluster.status(ENDPOINTS[0])
    before = _histogram_count("false")
    with pytest.raises(EtcdError, match=r"Failed to defragment etcd member\[http://localhost:2379\]"):
        defrag_data(_tls(), 1e-6, cluster.factory)
    new = cluster.status(ENDPOINTS[0])
    assert new.revision == old.revision
    assert new.db_size == old.db_size
    assert _histogram_count("false") == before + 1
    assert cluster.clients[0].closed


def test_every_endpoint_is_defragmented_with_config_endpoints():
    endpoints = ["http://localhost:2379", "http://localhost:22379"]
    cluster = FakeCluster(endpoints)
    tls = TLSConfig(insecure_transport=True, endpoints=list(endpoints))
    defrag_data(tls, 30.0, cluster.factory)
    assert cluster.defrag_calls == 2
    assert cluster.configs[0].endpoints == endpoints


def test_status_failure_does_not_stop_defragmentation():
    cluster = FakeCluster(ENDPOINTS)
    cluster.status_fails = True
    old_size = cluster.status(ENDPOINTS[0]).db_size
    defrag_data(_tls(), 30.0, cluster.factory)
    assert cluster.status(ENDPOINTS[0]).db_size < old_size


def test_client_creation_failure_raises_etcd_error():
    def failing_factory(config):
        raise ConnectionError("refused")

    with pytest.raises(EtcdError, match="failed to create etcd client for defragmentation: refused"):
        defrag_data(_tls(), 30.0, failing_factory)


def test_defrag_periodically_with_callback():
    cluster = FakeCluster(ENDPOINTS)
    old = cluster.status(ENDPOINTS[0])
    calls = []
    stop = CountingStop(rounds=2)
    defrag_data_periodically(stop, _tls(), 30.0, 30.0, lambda: calls.append(1), cluster.factory)
    new = cluster.status(ENDPOINTS[0])
    assert len(calls) == 2
    assert new.db_size < old.db_size
    assert new.revision == old.revision
    assert stop.waits == [30.0, 30.0, 30.0]


def test_failed_defrag_skips_callback():
    cluster = FakeCluster(ENDPOINTS)
    calls = []
    defrag_data_periodically(CountingStop(rounds=3), _tls(), 1.0, 1e-6, lambda: calls.append(1), cluster.factory)
    assert calls == []
    assert cluster.defrag_calls == 3


def test_callback_failure_does_not_stop_loop():
    cluster = FakeCluster(ENDPOINTS)
    calls = []

    def callback():
        calls.append(1)
        raise RuntimeError("snapshot failed")

    stop = CountingStop(rounds=2)
    defrag_data_periodically(stop, _tls(), 1.0, 30.0, callback, cluster.factory)
    assert len(calls) == 2
    assert cluster.defrag_calls == 2
    assert cluster.status(ENDPOINTS[0]).db_size == 1024
    assert stop.waits == [1.0, 1.0, 1.0]


def test_stop_before_first_period_does_nothing():
    cluster = FakeCluster(ENDPOINTS)
    calls = []
    defrag_data_periodically(CountingStop(rounds=0), _tls(), 1.0, 30.0, lambda: calls.append(1), cluster.factory)
    assert calls == []
    assert cluster.clients == []