"""TCP port allocation for new instances."""
from __future__ import annotations

import errno
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .errors import ValidationError

MAX_PORT = 65535

PortProbe = Callable[[int], bool]


class PortAllocationError(ValidationError):
    """Raised when no free port exists between the base and the upper bound."""


def is_port_in_use(port: int) -> bool:
    """Return True when binding *port* on all interfaces fails.

    ``SO_REUSEADDR`` is left unset so a port held by a listener (or lingering in
    TIME_WAIT) is reported as taken. The answer is only valid at the moment of
    the call; another process may claim the port before it is used.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError as exc:
            if exc.errno in (errno.EADDRINUSE, errno.EACCES):
                return True
            raise
    return False


@dataclass(slots=True)
class PortAllocator:
    """Sequentially probe ports from a base value up to *max_port*."""

    probe: PortProbe = is_port_in_use
    max_port: int = MAX_PORT

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not 1 <= self.max_port <= MAX_PORT:
            raise PortAllocationError(f"Port upper bound must be between 1 and {MAX_PORT}.")

    def find_free_port(self, base: int, *, exclude: Iterable[int] = ()) -> int:
        """Return the first port >= *base* with no listener and not excluded."""
        if base < 1:
            raise PortAllocationError("Base port must be a positive integer.")
        skipped = set(exclude)
        candidate = base
        while candidate <= self.max_port:
            if candidate not in skipped and not self.probe(candidate):
                return candidate
            candidate += 1
        raise PortAllocationError(
            f"No free TCP port between {base} and {self.max_port}."
        )


def find_free_port(base: int, *, exclude: Iterable[int] = (), max_port: int = MAX_PORT) -> int:
    """Probe the live host for the first free port at or above *base*."""
    return PortAllocator(max_port=max_port).find_free_port(base, exclude=exclude)


__all__ = [
    "MAX_PORT",
    "PortAllocationError",
    "PortAllocator",
    "PortProbe",
    "find_free_port",
    "is_port_in_use",
]
