"""An atomic reference cell: many shared borrows or one exclusive borrow."""

from __future__ import annotations

import sys
import threading
from typing import Generic, TypeVar

T = TypeVar("T")

_MUTLOCK = (sys.maxsize // 2) + 1


class BorrowError(Exception):
    """The cell could not be borrowed in the requested way."""


class ArfGuard(Generic[T]):
    """A shared borrow of an ArfCell's value."""

    def __init__(self, cell: "ArfCell[T]") -> None:
        self._cell = cell
        self._live = True

    @property
    def value(self) -> T:
        if not self._live:
            raise BorrowError("guard already released")
        return self._cell._item

    def release(self) -> None:
        """Give the shared borrow back; repeated calls do nothing."""
        if self._live:
            self._live = False
            self._cell._release_shared()

    def __enter__(self) -> "ArfGuard[T]":
        return self

    def __exit__(self, *args: object) -> None:
        self.release()


class MutArfGuard(Generic[T]):
    """An exclusive borrow of an ArfCell's value, which may replace it."""

    def __init__(self, cell: "ArfCell[T]") -> None:
        self._cell = cell
        self._live = True

    @property
    def value(self) -> T:
        if not self._live:
            raise BorrowError("guard already released")
        return self._cell._item

    @value.setter
    def value(self, new: T) -> None:
        if not self._live:
            raise BorrowError("guard already released")
        self._cell._item = new

    def release(self) -> None:
        """Give the exclusive borrow back; repeated calls do nothing."""
        if self._live:
            self._live = False
            self._cell._release_exclusive()

    def __enter__(self) -> "MutArfGuard[T]":
        return self

    def __exit__(self, *args: object) -> None:
        self.release()


class ArfCell(Generic[T]):
    """Like a read/write lock that fails instead of blocking."""

    def __init__(self, item: T) -> None:
        self._item = item
        self._state = 0
        self._lock = threading.Lock()

    def borrow(self) -> ArfGuard[T]:
        """Take a shared borrow; raises BorrowError while exclusively borrowed."""
        with self._lock:
            if self._state >= _MUTLOCK:
                raise BorrowError("cell is mutably borrowed")
            self._state += 1
        return ArfGuard(self)

    def borrow_mut(self) -> MutArfGuard[T]:
        """Take an exclusive borrow; raises BorrowError while any borrow is live."""
        with self._lock:
            if self._state != 0:
                raise BorrowError("cell is already borrowed")
            self._state = _MUTLOCK
        return MutArfGuard(self)

    def _release_shared(self) -> None:
        with self._lock:
            if self._state == 0:
                raise BorrowError("underflow on shared borrow release")
            self._state -= 1

    def _release_exclusive(self) -> None:
        with self._lock:
            self._state = 0