"""
Client order id allocation.

Ids are a monotonic counter offset by a random per-instance salt and folded
into the unsigned 32-bit range the exchange accepts. Two allocators in the
same process start at different points, and each id is checked against the
caller's live set before it is handed out.
"""

from __future__ import annotations

import itertools
import secrets
from typing import Callable, Optional

UINT32_MASK = 0xFFFFFFFF


class ClientIdAllocator:
    __slots__ = ("_salt", "_counter", "_issued")

    def __init__(self, salt: Optional[int] = None) -> None:
        self._salt = (salt if salt is not None else secrets.randbits(32)) & UINT32_MASK
        self._counter = itertools.count(1)
        self._issued = 0

    @property
    def salt(self) -> int:
        return self._salt

    @property
    def issued(self) -> int:
        return self._issued

    def next_id(self, in_use: Optional[Callable[[int], bool]] = None) -> int:
        """
        Return the next client id not reported as in use.

        in_use is typically OrderLifecycleManager.is_tracked; the loop is
        bounded because the live set is far smaller than 2**32.
        """
        while True:
            cid = (self._salt + next(self._counter)) & UINT32_MASK
            if cid == 0:
                continue
            if in_use is not None and in_use(cid):
                continue
            self._issued += 1
            return cid
