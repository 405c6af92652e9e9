from __future__ import annotations

import weakref
from collections.abc import Callable

from daolens.exceptions import RequestCancelledError


class CancellationToken:
    """Cooperative cancellation flag threaded through a single request.

    A child token is cancelled whenever any of its ancestors is. Callbacks registered with `on_cancel` run
    synchronously on cancellation, which lets a pending await be interrupted instead of polled.
    """

    __slots__ = ('__weakref__', '_callbacks', '_cancelled', '_children', '_parent', 'name')

    def __init__(self, parent: CancellationToken | None = None, name: str | None = None) -> None:
        self._parent = parent
        self._cancelled = False
        self._callbacks: list[Callable[[], object]] = []
        self._children: weakref.WeakSet[CancellationToken] = weakref.WeakSet()
        self.name = name
        if parent is not None:
            parent._children.add(self)

    def __repr__(self) -> str:
        return f'<CancellationToken {self.name or id(self)} cancelled={self.cancelled}>'

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for child in list(self._children):
            child.cancel()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def child(self, name: str | None = None) -> CancellationToken:
        return CancellationToken(parent=self, name=name)

    def on_cancel(self, callback: Callable[[], object]) -> Callable[[], None]:
        """Run `callback` on cancellation (immediately if already cancelled); returns an unregister function"""
        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelledError(self.name or 'request')
