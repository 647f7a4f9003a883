"""
AckRefRegistry — resolves ack_ref tokens back to the ClientConfig they were
issued for.

Every message carries only the token; the acknowledger looks the config up
again when the downstream pipeline reports a finished batch. Entries are
added by a client's init() and kept for the lifetime of the process, so a
token stays resolvable for as long as any in-flight message references it.

Safe to share between producers running on different threads.
"""

from __future__ import annotations

import dataclasses
import threading

from relq.domain.errors import AckRefNotFoundError
from relq.domain.models import ClientConfig


@dataclasses.dataclass
class AckRefRegistry:
    """Append-only mapping of ack_ref -> ClientConfig."""

    _entries: dict[str, ClientConfig] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def put(self, config: ClientConfig) -> str:
        """Register config under its own ack_ref and return the token."""
        with self._lock:
            self._entries[config.ack_ref] = config
        return config.ack_ref

    def get(self, ack_ref: str) -> ClientConfig:
        """Resolve a token. Raises AckRefNotFoundError if it was never registered."""
        try:
            return self._entries[ack_ref]
        except KeyError:
            raise AckRefNotFoundError(ack_ref) from None

    def discard(self, ack_ref: str) -> None:
        """
        Drop a token.

        Only for explicit teardown once no message referencing it is in flight;
        producers never call this.
        """
        with self._lock:
            self._entries.pop(ack_ref, None)

    def __contains__(self, ack_ref: object) -> bool:
        return ack_ref in self._entries

    def __len__(self) -> int:
        return len(self._entries)


default_registry = AckRefRegistry()
