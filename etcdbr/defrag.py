"""Defragmentation of the data directory of etcd members."""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from etcdbr.errors import EtcdError
from etcdbr.metrics import (
    DEFRAGMENTATION_DURATION_SECONDS,
    LABEL_SUCCEEDED,
    VALUE_SUCCEEDED_FALSE,
    VALUE_SUCCEEDED_TRUE,
)
from etcdbr.tlsconfig import ClientConfig, TLSConfig, build_client_config

logger = logging.getLogger(__name__)

ETCD_DIAL_TIMEOUT = 30.0


@dataclass(frozen=True)
class MemberStatus:
    """Status of one etcd member."""

    db_size: int
    revision: int = 0


class _StopEvent(Protocol):
    def wait(self, timeout: float | None = None) -> bool: ...


ClientFactory = Callable[[ClientConfig], Any]


def defrag_data(
    tls_config: TLSConfig,
    connection_timeout: float,
    client_factory: ClientFactory,
) -> None:
    """Defragment every endpoint of ``tls_config`` in turn.

    ``client_factory`` builds a client from a ClientConfig; the client offers
    ``status(endpoint, timeout)`` returning a MemberStatus,
    ``defragment(endpoint, timeout)`` and ``close()``. Raises EtcdError when the
    client cannot be created or a member fails to defragment.
    """
    try:
        client = client_factory(build_client_config(tls_config))
    except Exception as err:
        raise EtcdError(f"failed to create etcd client for defragmentation: {err}") from err

    with contextlib.closing(client):
        for endpoint in tls_config.endpoints:
            logger.info("Defragmenting etcd member[%s]", endpoint)
            size_before = _db_size(client, endpoint)

            start = time.monotonic()
            try:
                client.defragment(endpoint, connection_timeout)
            except Exception as err:
                DEFRAGMENTATION_DURATION_SECONDS.with_labels(
                    {LABEL_SUCCEEDED: VALUE_SUCCEEDED_FALSE}
                ).observe(time.monotonic() - start)
                raise EtcdError(
                    f"Failed to defragment etcd member[{endpoint}] with error: {err}"
                ) from err
            DEFRAGMENTATION_DURATION_SECONDS.with_labels(
                {LABEL_SUCCEEDED: VALUE_SUCCEEDED_TRUE}
            ).observe(time.monotonic() - start)
            logger.info("Finished defragmenting etcd member[%s]", endpoint)

            # The status races with other etcd operations, so the size is approximate.
            size_after = _db_size(client, endpoint)
            logger.info(
                "Probable DB size change for etcd member [%s]:  %dB -> %dB after defragmentation",
                endpoint,
                size_before,
                size_after,
            )


def _db_size(client: Any, endpoint: str) -> int:
    try:
        return client.status(endpoint, ETCD_DIAL_TIMEOUT).db_size
    except Exception as err:
        logger.warning("Failed to get status of etcd member[%s] with error: %s", endpoint, err)
        return 0


def defrag_data_periodically(
    stop_event: _StopEvent,
    tls_config: TLSConfig,
    period: float,
    connection_timeout: float,
    callback: Callable[[], Any],
    client_factory: ClientFactory,
) -> None:
    """Defragment every ``period`` seconds until ``stop_event`` is set.

    After each successful defragmentation ``callback`` is called; failures of
    either step are logged and the loop goes on.
    """
    logger.info("Defragmentation period :%d hours", int(period // 3600))
    while not stop_event.wait(period):
        try:
            defrag_data(tls_config, connection_timeout, client_factory)
        except EtcdError as err:
            logger.warning("Failed to defrag data with error: %s", err)
            continue
        try:
            callback()
        except Exception as err:
            logger.warning("Failed to trigger full snapshot: %s", err)
    logger.info("Stopping the defragmentation thread.")