"""Network usage counters read from the process's network device statistics."""

from __future__ import annotations

import enum
import logging
import math
import os
import sys
from collections.abc import Callable, Iterator

from etcdbr.metrics import DEFAULT_REGISTRY, NAMESPACE_ETCDBR

logger = logging.getLogger(__name__)


class NetworkMode(str, enum.Enum):
    """Direction of network traffic."""

    TRANSMIT = "transmit"
    RECEIVE = "receive"


_BYTES_FIELD = {
    NetworkMode.TRANSMIT: 8,
    NetworkMode.RECEIVE: 0,
}


def _default_path() -> str:
    return f"/proc/{os.getpid()}/net/dev"


def get_network_usage_bytes(mode: NetworkMode, path: str | None = None) -> float:
    """Return the bytes moved in ``mode`` summed over all interfaces.

    ``path`` defaults to this process's ``net/dev`` file. NaN is returned when
    the file cannot be read or a byte count cannot be parsed.
    """
    field_index = _BYTES_FIELD[NetworkMode(mode)]
    file_name = path if path is not None else _default_path()
    try:
        with open(file_name, encoding="utf-8") as stats:
            lines = stats.read().splitlines()
    except OSError:
        logger.warning("failed to readfile: %s", file_name)
        return math.nan

    usage_bytes = 0.0
    for line in lines:
        fields = line.split(":")
        if len(fields) < 2:
            # Header lines carry no interface counters.
            continue
        values = fields[1].split()
        try:
            usage_bytes += float(values[field_index])
        except ValueError:
            return math.nan
    return usage_bytes


def get_network_transmitted_bytes(path: str | None = None) -> float:
    """Return the bytes transmitted over all interfaces."""
    return get_network_usage_bytes(NetworkMode.TRANSMIT, path)


def get_network_received_bytes(path: str | None = None) -> float:
    """Return the bytes received over all interfaces."""
    return get_network_usage_bytes(NetworkMode.RECEIVE, path)


class CounterFunc:
    """A counter whose value is read from a function each time it is collected."""

    def __init__(
        self,
        name: str,
        help: str,
        function: Callable[[], float],
        namespace: str = "",
        subsystem: str = "",
    ) -> None:
        self.name = "_".join(part for part in (namespace, subsystem, name) if part)
        self.help = help
        self._function = function

    def value(self) -> float:
        """Return the current value of the counter."""
        return self._function()

    def samples(self) -> Iterator[tuple[dict[str, str], CounterFunc]]:
        """Yield the single, unlabelled sample of this counter."""
        yield {}, self


NETWORK_TRANSMITTED_BYTES = CounterFunc(
    "transmitted_bytes",
    "Number of bytes transmitted over network.",
    get_network_transmitted_bytes,
    NAMESPACE_ETCDBR,
    "network",
)
NETWORK_RECEIVED_BYTES = CounterFunc(
    "received_bytes",
    "Number of bytes received over network.",
    get_network_received_bytes,
    NAMESPACE_ETCDBR,
    "network",
)

if sys.platform.startswith("linux"):
    DEFAULT_REGISTRY.register(NETWORK_TRANSMITTED_BYTES)
    DEFAULT_REGISTRY.register(NETWORK_RECEIVED_BYTES)