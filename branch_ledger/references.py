"""
Transaction reference allocation.

References are short opaque tokens printed on receipts and used for
reconciliation. Generation is random; uniqueness is guaranteed by the
transaction store's unique constraint, and the engine regenerates on the
rare collision.
"""

import uuid
from typing import Callable, Optional


class ReferenceAllocator:
    """Produces fixed-length uppercase hex references"""

    def __init__(self, length: int = 16, generator: Optional[Callable[[], str]] = None):
        if not 8 <= length <= 32:
            raise ValueError("Reference length must be between 8 and 32")
        self.length = length
        self._generator = generator or (lambda: uuid.uuid4().hex)

    def new_reference(self) -> str:
        token = self._generator()[:self.length].upper()
        if len(token) != self.length:
            raise ValueError(f"Reference generator produced a short token: {token!r}")
        return token
