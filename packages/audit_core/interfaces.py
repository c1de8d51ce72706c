"""Transport-neutral protocol interfaces the audit engine depends on."""

from __future__ import annotations

from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Mapping,
    Protocol,
    Sequence,
)

from packages.audit_core.domain import AuditContext, AuditRecord

DefaultWrite = Callable[[Sequence[AuditRecord]], Awaitable[None]]


class ModelDelegate(Protocol):
    """Per-model data access with a nested-write payload DSL."""

    async def find_unique(
        self, *, where: Mapping[str, Any], include: Mapping[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Return the record matching a unique filter, or ``None``."""

    async def find_first(
        self,
        *,
        where: Mapping[str, Any] | None = None,
        include: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Return the first record matching a filter, or ``None``."""

    async def find_many(
        self,
        *,
        where: Mapping[str, Any] | None = None,
        include: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Return every record matching a filter."""

    async def create(
        self, *, data: Mapping[str, Any], include: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Insert one record, applying nested writes in ``data``."""

    async def create_many(self, *, data: Sequence[Mapping[str, Any]]) -> dict[str, int]:
        """Insert many flat records and return ``{"count": n}``."""

    async def update(
        self,
        *,
        where: Mapping[str, Any],
        data: Mapping[str, Any],
        include: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Update one record, applying nested writes in ``data``."""

    async def update_many(
        self, *, where: Mapping[str, Any] | None = None, data: Mapping[str, Any]
    ) -> dict[str, int]:
        """Update every matching record with flat ``data``."""

    async def upsert(
        self,
        *,
        where: Mapping[str, Any],
        create: Mapping[str, Any],
        update: Mapping[str, Any],
        include: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Update the matching record or create it."""

    async def delete(
        self, *, where: Mapping[str, Any], include: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """Delete one record and return it."""

    async def delete_many(
        self, *, where: Mapping[str, Any] | None = None
    ) -> dict[str, int]:
        """Delete every matching record."""


class DataClient(Protocol):
    """Data access handle with a transaction-wrapping primitive."""

    @property
    def schema(self) -> "SchemaIntrospector":
        """Return schema metadata for the models this client serves."""

    def model(self, name: str) -> ModelDelegate:
        """Return the delegate for one model."""

    def transaction(self) -> AsyncContextManager["DataClient"]:
        """Open a transaction; commit on clean exit, roll back on error."""


class SchemaIntrospector(Protocol):
    """Per-model field, relation, and unique-constraint metadata."""

    def has_model(self, model: str) -> bool:
        """Return whether ``model`` is declared."""

    def get_relation_fields(self, model: str) -> Sequence[Any]:
        """Return the relation fields of ``model``."""

    def get_unique_constraints(self, model: str) -> Sequence[Any]:
        """Return the unique constraints of ``model``."""


class AuditLogWriter(Protocol):
    """Custom audit sink replacing or wrapping the default bulk insert.

    Implementations must only persist through ``default_write`` or through a
    resource that honors the same transaction boundary, so rolled-back
    mutations never leave audit rows behind.
    """

    async def __call__(
        self,
        records: Sequence[AuditRecord],
        context: AuditContext,
        default_write: DefaultWrite,
    ) -> None:
        """Persist a batch of finished audit records."""


class WriteErrorCallback(Protocol):
    """Host hook notified of every audit write failure."""

    def __call__(self, error: BaseException, operation: str) -> None:
        """Observe one failure; raising here is logged and ignored."""
