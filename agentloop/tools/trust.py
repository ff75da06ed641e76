"""Session-scoped "always allow" policy for tool confirmations.

Answers given with ``PROCEED_ALWAYS_SERVER`` or ``PROCEED_ALWAYS_TOOL``
are remembered here, keyed by ``(server_name, tool_name)``. Built-in tools
use ``server_name=None``. One policy object is created per session and
passed to the scheduler, so separate sessions never share approvals.
"""

import threading
from typing import Optional, Set, Tuple


class TrustPolicy:
    """Remembers which tools and servers no longer need confirmation."""

    def __init__(self):
        self._lock = threading.Lock()
        self._servers: Set[str] = set()
        self._tools: Set[Tuple[Optional[str], str]] = set()

    def is_trusted(self, server_name: Optional[str], tool_name: str) -> bool:
        with self._lock:
            if server_name is not None and server_name in self._servers:
                return True
            return (server_name, tool_name) in self._tools

    def trust_server(self, server_name: str) -> None:
        with self._lock:
            self._servers.add(server_name)

    def trust_tool(self, server_name: Optional[str], tool_name: str) -> None:
        with self._lock:
            self._tools.add((server_name, tool_name))

    def clear(self) -> None:
        with self._lock:
            self._servers.clear()
            self._tools.clear()
