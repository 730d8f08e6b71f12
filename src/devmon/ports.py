"""Listening-port and connection lookup for display purposes."""

import logging
from collections.abc import Iterable, Mapping, Sequence

from devmon.errors import MalformedRowError
from devmon.models import PortInfo

logger = logging.getLogger(__name__)

LISTEN = "LISTEN"
ESTABLISHED = "ESTABLISHED"

# (pid, local_address, remote_address, status)
SocketRow = Sequence


def port_of(address) -> int | None:
    """
    Extract the port from an address.

    Accepts ``"host:port"`` text (``*:3000``, ``[::1]:3000``) or a
    ``(host, port)`` pair such as psutil's ``addr`` tuples. Empty
    addresses give None.

    Raises:
        MalformedRowError: If the address is present but has no integer port.
    """
    if not address:
        return None
    if isinstance(address, (tuple, list)):
        if len(address) < 2:
            raise MalformedRowError(f"address without port: {address!r}")
        port = address[1]
    else:
        port = str(address).rsplit(":", 1)[-1]
    try:
        return int(port)
    except (TypeError, ValueError) as e:
        raise MalformedRowError(f"bad port in {address!r}") from e


class PortCorrelator:
    """
    Answers port questions against one socket-table snapshot.

    When a pid listens on several ports in range only the first one found
    is reported.
    """

    def __init__(self, sockets: Iterable[SocketRow], port_min: int, port_max: int) -> None:
        self._port_min = port_min
        self._port_max = port_max
        self._rows: list[tuple[int | None, int | None, int | None, str]] = []
        for row in sockets:
            try:
                self._rows.append(self._parse(row))
            except MalformedRowError as e:
                logger.debug("Skipping socket row: %s", e)

    @staticmethod
    def _parse(row: SocketRow) -> tuple[int | None, int | None, int | None, str]:
        if len(row) < 4:
            raise MalformedRowError(f"expected 4 fields, got {len(row)}")
        try:
            pid = int(row[0]) if row[0] is not None else None
        except (TypeError, ValueError) as e:
            raise MalformedRowError(f"bad pid in {row!r}") from e
        return pid, port_of(row[1]), port_of(row[2]), str(row[3] or "").upper()

    def _in_range(self, port: int | None) -> bool:
        return port is not None and self._port_min <= port <= self._port_max

    def listening_port(self, pid: int) -> int | None:
        """First in-range LISTEN port owned by ``pid``, or None."""
        for owner, local, _, status in self._rows:
            if owner == pid and status == LISTEN and self._in_range(local):
                return local
        return None

    def connection_count(self, port: int) -> int:
        """Number of ESTABLISHED sockets with ``port`` on either end."""
        return sum(
            1
            for _, local, remote, status in self._rows
            if status == ESTABLISHED and port in (local, remote)
        )

    def listening_ports(self, names: Mapping[int, str] | None = None) -> list[PortInfo]:
        """
        All in-range listening ports, ascending, one entry per port.

        Args:
            names: Optional pid -> process name map for labelling.
        """
        names = names or {}
        seen: dict[int, PortInfo] = {}
        for owner, local, _, status in self._rows:
            if status != LISTEN or not self._in_range(local) or local in seen:
                continue
            seen[local] = PortInfo(
                port=local,
                pid=owner or 0,
                process_name=names.get(owner, "") if owner is not None else "",
                connection_count=self.connection_count(local),
            )
        return [seen[port] for port in sorted(seen)]
