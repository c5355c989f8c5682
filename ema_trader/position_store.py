"""
Position Store: the single owner of Position rows.

Writes for one (user, symbol) pair go through a critical section keyed by
that pair; different pairs never block each other.
"""
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from loguru import logger

from ema_trader.models import ACTIVE_STATUSES, ExitReason, Position, PositionStatus


# Allowed status changes; terminal states have no way out
ALLOWED_TRANSITIONS = {
    PositionStatus.PENDING: {PositionStatus.OPEN, PositionStatus.CANCELLED},
    PositionStatus.OPEN: {PositionStatus.CLOSED_PROFIT, PositionStatus.CLOSED_LOSS},
    PositionStatus.CLOSED_PROFIT: set(),
    PositionStatus.CLOSED_LOSS: set(),
    PositionStatus.CANCELLED: set(),
}

# Fields only the store may set
_PROTECTED_FIELDS = {'id', 'user_id', 'symbol', 'status'}


class PositionStoreError(Exception):
    """Base class for position store failures."""
    pass


class PositionConflictError(PositionStoreError):
    """An active position already exists for the (user, symbol) pair."""

    def __init__(self, existing: Position):
        self.existing = existing
        super().__init__(
            f"Active position {existing.id} ({existing.status.value}) already exists "
            f"for {existing.user_id}/{existing.symbol}"
        )


class InvalidTransitionError(PositionStoreError):
    """Illegal status change (skipped or reversed)."""
    pass


class PositionNotFoundError(PositionStoreError):
    pass


def check_transition(current: PositionStatus, target: PositionStatus) -> None:
    """
    Validate a status change.

    Raises:
        InvalidTransitionError: If the change is not allowed
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move position from {current.value} to {target.value}")


class PositionStore(ABC):
    """
    Storage contract the engine relies on.

    `lock_for(user_id, symbol)` is re-entrant: a caller holding it may call
    any other store method for the same pair.
    """

    @abstractmethod
    def lock_for(self, user_id: str, symbol: str):
        """Context manager serializing work on one (user, symbol) pair."""

    @abstractmethod
    def create_pending_or_open(self, user_id: str, symbol: str, amount: float, status: PositionStatus,
                               entry_price: float, **fields) -> Position:
        """
        Create a position unless one is already active for the pair.

        Raises:
            PositionConflictError: If a pending/open position exists
        """

    @abstractmethod
    def update_status(self, position_id: int, status: PositionStatus, **fields) -> Position:
        """
        Move a position to a new status, setting extra fields in the same update.

        Raises:
            PositionNotFoundError: If the position does not exist
            InvalidTransitionError: If the change is not allowed
        """

    @abstractmethod
    def update_fields(self, position_id: int, **fields) -> Position:
        """Set non-status fields (current price, order ids)."""

    @abstractmethod
    def get(self, position_id: int) -> Optional[Position]:
        pass

    @abstractmethod
    def find_active(self, user_id: str, symbol: str) -> Optional[Position]:
        pass

    @abstractmethod
    def find_all_open(self, symbol: str, user_id: str) -> List[Position]:
        pass

    @abstractmethod
    def find_pending(self) -> List[Position]:
        pass

    @abstractmethod
    def all(self) -> List[Position]:
        pass

    def close(
        self,
        position_id: int,
        status: PositionStatus,
        exit_price: float,
        exit_reason: ExitReason,
        profit_loss: float,
        profit_loss_percentage: float,
        exit_time: Optional[datetime] = None
    ) -> Position:
        """
        Close an open position, setting every exit field with the status.

        Args:
            position_id: Position ID
            status: CLOSED_PROFIT or CLOSED_LOSS
            exit_price: Exit price
            exit_reason: Why the position closed
            profit_loss: Dollar P&L
            profit_loss_percentage: P&L in percent
            exit_time: Exit time (defaults to now)

        Returns:
            Updated position
        """
        return self.update_status(
            position_id,
            status,
            exit_price=exit_price,
            exit_time=exit_time or datetime.now(),
            exit_reason=exit_reason,
            current_price=exit_price,
            profit_loss=profit_loss,
            profit_loss_percentage=profit_loss_percentage,
        )


class InMemoryPositionStore(PositionStore):
    """
    Thread-safe in-memory position store.

    Each (user, symbol) pair gets its own RLock; a global lock only guards
    the lock table, the ID counter and the row dictionary itself. Callers
    always receive copies, never the stored objects.
    """

    def __init__(self):
        self._positions: Dict[int, Position] = {}
        self._next_id = 1
        self._global_lock = threading.Lock()
        self._key_locks: Dict[Tuple[str, str], threading.RLock] = {}

        logger.info("InMemoryPositionStore initialized")

    def _key_lock(self, user_id: str, symbol: str) -> threading.RLock:
        key = (str(user_id), symbol)
        with self._global_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._key_locks[key] = lock
            return lock

    @contextmanager
    def lock_for(self, user_id: str, symbol: str) -> Iterator[None]:
        lock = self._key_lock(user_id, symbol)
        with lock:
            yield

    def _row(self, position_id: int) -> Position:
        with self._global_lock:
            position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(f"Position {position_id} not found")
        return position

    def _rows(self) -> List[Position]:
        with self._global_lock:
            return list(self._positions.values())

    def _find_active_row(self, user_id: str, symbol: str) -> Optional[Position]:
        for position in self._rows():
            if position.user_id == str(user_id) and position.symbol == symbol and position.is_active:
                return position
        return None

    def create_pending_or_open(self, user_id: str, symbol: str, amount: float, status: PositionStatus,
                               entry_price: float, **fields) -> Position:
        if status not in ACTIVE_STATUSES:
            raise InvalidTransitionError(f"New positions must be pending or open, got {status.value}")

        with self.lock_for(user_id, symbol):
            existing = self._find_active_row(user_id, symbol)
            if existing is not None:
                raise PositionConflictError(existing.model_copy())

            now = datetime.now()
            with self._global_lock:
                position_id = self._next_id
                self._next_id += 1
                position = Position(
                    id=position_id,
                    user_id=str(user_id),
                    symbol=symbol,
                    amount=amount,
                    status=status,
                    entry_price=entry_price,
                    entry_time=fields.pop('entry_time', None) or now,
                    updated_at=now,
                    **fields
                )
                self._positions[position_id] = position

        logger.info(
            f"Position {position.id} created | {user_id}/{symbol} | {status.value} | "
            f"amount=${amount:.2f} entry={entry_price}"
        )
        return position.model_copy()

    def update_status(self, position_id: int, status: PositionStatus, **fields) -> Position:
        current = self._row(position_id)

        with self.lock_for(current.user_id, current.symbol):
            # Re-read under the pair lock
            current = self._row(position_id)
            check_transition(current.status, status)

            if status in ACTIVE_STATUSES:
                other = self._find_active_row(current.user_id, current.symbol)
                if other is not None and other.id != position_id:
                    raise PositionConflictError(other.model_copy())

            updates = {k: v for k, v in fields.items() if k not in _PROTECTED_FIELDS}
            updated = current.model_copy(update={**updates, 'status': status, 'updated_at': datetime.now()})
            with self._global_lock:
                self._positions[position_id] = updated

        logger.info(f"Position {position_id} {current.status.value} -> {status.value}")
        return updated.model_copy()

    def update_fields(self, position_id: int, **fields) -> Position:
        current = self._row(position_id)

        with self.lock_for(current.user_id, current.symbol):
            current = self._row(position_id)
            updates = {k: v for k, v in fields.items() if k not in _PROTECTED_FIELDS}
            updated = current.model_copy(update={**updates, 'updated_at': datetime.now()})
            with self._global_lock:
                self._positions[position_id] = updated

        return updated.model_copy()

    def get(self, position_id: int) -> Optional[Position]:
        with self._global_lock:
            position = self._positions.get(position_id)
        return position.model_copy() if position else None

    def find_active(self, user_id: str, symbol: str) -> Optional[Position]:
        position = self._find_active_row(user_id, symbol)
        return position.model_copy() if position else None

    def find_all_open(self, symbol: str, user_id: str) -> List[Position]:
        return [
            p.model_copy() for p in self._rows()
            if p.symbol == symbol and p.user_id == str(user_id) and p.status == PositionStatus.OPEN
        ]

    def find_pending(self) -> List[Position]:
        return [p.model_copy() for p in self._rows() if p.status == PositionStatus.PENDING]

    def all(self) -> List[Position]:
        return [p.model_copy() for p in self._rows()]
