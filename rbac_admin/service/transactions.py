from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
)

from rbac_admin.logging import get_logger
from rbac_admin.service.errors import (
    BadRequestError,
    ConflictError,
    ServerError,
    ServiceError,
)
from rbac_admin.storage.errors import ConstraintViolation, ReferenceViolation
from rbac_admin.storage.models import (
    Page,
    Permission,
    PermissionQuery,
    Role,
    RoleQuery,
    User,
    UserQuery,
)

logger = get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_MARKERS = (
    "deadlock",
    "timeout",
    "timed out",
    "connection",
    "try again",
    "serialization",
    "could not serialize",
)


class StoreReader(Protocol):
    async def get_user(self, user_id: int, *, for_update: bool = False) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def list_users(self, query: UserQuery, page: Page) -> Tuple[List[User], int]: ...

    async def get_role(self, role_id: int, *, for_update: bool = False) -> Optional[Role]: ...

    async def get_role_by_name(self, name: str) -> Optional[Role]: ...

    async def get_roles(self, role_ids: Sequence[int]) -> List[Role]: ...

    async def list_roles(self, query: RoleQuery, page: Page) -> Tuple[List[Role], int]: ...

    async def list_role_users(self, role_id: int) -> List[User]: ...

    async def get_permission(
        self, permission_id: int, *, for_update: bool = False
    ) -> Optional[Permission]: ...

    async def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    async def get_permissions(self, permission_ids: Sequence[int]) -> List[Permission]: ...

    async def list_permissions(
        self, query: PermissionQuery, page: Page
    ) -> Tuple[List[Permission], int]: ...


class StoreTransaction(StoreReader, Protocol):
    def savepoint(self) -> AsyncContextManager["StoreTransaction"]: ...

    async def username_taken(self, username: str, exclude_id: Optional[int] = None) -> bool: ...

    async def email_taken(self, email: str, exclude_id: Optional[int] = None) -> bool: ...

    async def insert_user(self, user: User, role_ids: Sequence[int]) -> User: ...

    async def update_user(
        self, user: User, role_ids: Optional[Sequence[int]] = None
    ) -> User: ...

    async def delete_user(self, user_id: int) -> bool: ...

    async def role_name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool: ...

    async def count_role_users(self, role_id: int) -> int: ...

    async def list_role_user_ids(self, role_id: int) -> List[int]: ...

    async def insert_role(self, role: Role, permission_ids: Sequence[int]) -> Role: ...

    async def update_role(
        self, role: Role, permission_ids: Optional[Sequence[int]] = None
    ) -> Role: ...

    async def delete_role(self, role_id: int) -> bool: ...

    async def permission_name_taken(
        self, name: str, exclude_id: Optional[int] = None
    ) -> bool: ...

    async def count_permission_roles(self, permission_id: int) -> int: ...

    async def insert_permission(self, permission: Permission) -> Permission: ...

    async def update_permission(self, permission: Permission) -> Permission: ...

    async def delete_permission(self, permission_id: int) -> bool: ...


class Store(StoreReader, Protocol):
    kind: str

    def transaction(self) -> AsyncContextManager[StoreTransaction]: ...

    async def open(self) -> None: ...

    async def close(self) -> None: ...


def is_retryable_error(exc: Optional[BaseException]) -> bool:
    """Transient store failures (deadlock, timeout, lost connection, serialization)."""

    while exc is not None:
        # ServerError only wraps the store failure; look at its cause
        if isinstance(exc, ConstraintViolation) or (
            isinstance(exc, ServiceError) and not isinstance(exc, ServerError)
        ):
            return False
        message = str(exc).lower()
        if any(marker in message for marker in _RETRYABLE_MARKERS):
            return True
        exc = exc.__cause__
    return False


class MutationCoordinator:
    """Runs multi-step writes as one atomic unit against the store.

    Domain errors raised inside the unit pass through unchanged. Constraint
    violations become ``ConflictError``/``BadRequestError``. Anything else is
    logged and re-raised as ``ServerError("Failed to <operation>")``. In every
    case the transaction rolls back and its connection is released.
    """

    def __init__(
        self,
        store: Store,
        *,
        retry_attempts: int = 1,
        retry_delay: float = 0.05,
    ) -> None:
        self.store = store
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[StoreTransaction]:
        try:
            async with self.store.transaction() as tx:
                yield tx
        except ServiceError:
            raise
        except ReferenceViolation as exc:
            logger.warning("transaction_reference_violation", operation=operation, detail=exc.detail)
            raise BadRequestError(exc.message, detail=exc.detail) from exc
        except ConstraintViolation as exc:
            logger.warning("transaction_constraint_violation", operation=operation, detail=exc.detail)
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except Exception as exc:
            logger.error(
                "transaction_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=exc,
            )
            raise ServerError(f"Failed to {operation}") from exc

    async def run(
        self, operation: str, work: Callable[[StoreTransaction], Awaitable[T]]
    ) -> T:
        """Run ``work`` inside a transaction, retrying transient store failures.

        Only failures whose cause ``is_retryable_error`` accepts are retried, up
        to ``retry_attempts`` total attempts; each attempt is a fresh transaction.
        """
        attempt = 1
        while True:
            try:
                async with self.transaction(operation) as tx:
                    return await work(tx)
            except ServerError as exc:
                if attempt >= self.retry_attempts or not is_retryable_error(exc.__cause__):
                    raise
                logger.warning(
                    "transaction_retry",
                    operation=operation,
                    attempt=attempt,
                    error=str(exc.__cause__),
                )
                await asyncio.sleep(self.retry_delay * attempt)
                attempt += 1


async def contained(
    tx: StoreTransaction, work: Callable[[StoreTransaction], Awaitable[Any]]
) -> Optional[str]:
    """Run ``work`` in a savepoint; return the error message instead of raising.

    Non-domain errors are logged and reported generically so that a single
    bad item cannot abort the surrounding transaction.
    """
    try:
        async with tx.savepoint() as inner:
            await work(inner)
    except ServiceError as exc:
        return exc.message
    except ConstraintViolation as exc:
        return exc.message
    except Exception as exc:
        logger.error("contained_item_failed", error_type=type(exc).__name__, error=str(exc))
        return "Operation failed"
    return None
