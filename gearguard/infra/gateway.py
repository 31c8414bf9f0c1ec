"""Tenant-scoped persistence used by the maintenance lifecycle engine.

Every read and write is filtered by ``company_id``. Writes are expressed as
operations run inside one transaction; conditional operations carry the
column values the caller read, and the whole transaction rolls back when any
of them no longer matches a row (compare-and-set).
"""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, select

ModelT = TypeVar("ModelT", bound=SQLModel)


class StaleWriteError(Exception):
    """A conditional write matched no row; nothing in the transaction was kept."""

    def __init__(self, operation: RowLock | ConditionalUpdate | ConditionalDelete) -> None:
        super().__init__(f"stale write on {operation.model.__name__} {operation.entity_id}")
        self.operation = operation


@dataclass(frozen=True)
class Insert:
    entity: SQLModel


@dataclass(frozen=True)
class RowLock:
    """Hold a lock on an existing row until the transaction ends.

    Writers that delete the row take it exclusively, so a transaction that
    depends on the row either sees it to the end or fails as stale.
    """

    model: type[SQLModel]
    company_id: str
    entity_id: str
    shared: bool = True


@dataclass(frozen=True)
class ConditionalUpdate:
    model: type[SQLModel]
    company_id: str
    entity_id: str
    changes: Mapping[str, Any]
    expected: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConditionalDelete:
    model: type[SQLModel]
    company_id: str
    entity_id: str
    expected: Mapping[str, Any] = field(default_factory=dict)


WriteOp = Insert | RowLock | ConditionalUpdate | ConditionalDelete


class PersistenceGateway(Protocol):
    def find(self, model: type[ModelT], company_id: str, entity_id: str) -> ModelT | None: ...

    def find_one(self, model: type[ModelT], company_id: str, **criteria: Any) -> ModelT | None: ...

    def find_all(self, model: type[ModelT], company_id: str, **criteria: Any) -> list[ModelT]: ...

    def count(self, model: type[SQLModel], company_id: str, **criteria: Any) -> int: ...

    def compare_and_swap(
        self,
        model: type[SQLModel],
        company_id: str,
        entity_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
        locks: Sequence[RowLock] = (),
    ) -> bool: ...

    def transaction(self, operations: Sequence[WriteOp]) -> None: ...


def _criteria_clauses(model: type[SQLModel], criteria: Mapping[str, Any]) -> list[Any]:
    clauses: list[Any] = []
    for name, value in criteria.items():
        column = getattr(model, name)
        if value is None:
            clauses.append(column.is_(None))
        elif isinstance(value, Collection) and not isinstance(value, str):
            clauses.append(column.in_(list(value)))
        else:
            clauses.append(column == value)
    return clauses


def _scoped_clauses(model: type[SQLModel], company_id: str, criteria: Mapping[str, Any]) -> list[Any]:
    return [model.company_id == company_id, *_criteria_clauses(model, criteria)]  # type: ignore[attr-defined]


class SqlPersistenceGateway:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def find(self, model: type[ModelT], company_id: str, entity_id: str) -> ModelT | None:
        return self.find_one(model, company_id, id=entity_id)

    def find_one(self, model: type[ModelT], company_id: str, **criteria: Any) -> ModelT | None:
        with self.session() as session:
            statement = select(model).where(*_scoped_clauses(model, company_id, criteria))
            return session.exec(statement).first()

    def find_all(self, model: type[ModelT], company_id: str, **criteria: Any) -> list[ModelT]:
        with self.session() as session:
            statement = select(model).where(*_scoped_clauses(model, company_id, criteria))
            return list(session.exec(statement).all())

    def count(self, model: type[SQLModel], company_id: str, **criteria: Any) -> int:
        with self.session() as session:
            statement = select(func.count()).select_from(model).where(*_scoped_clauses(model, company_id, criteria))
            return int(session.exec(statement).one())

    def compare_and_swap(
        self,
        model: type[SQLModel],
        company_id: str,
        entity_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
        locks: Sequence[RowLock] = (),
    ) -> bool:
        try:
            self.transaction([*locks, ConditionalUpdate(model, company_id, entity_id, changes, expected)])
        except StaleWriteError:
            return False
        return True

    def transaction(self, operations: Sequence[WriteOp]) -> None:
        with self.session() as session:
            try:
                for operation in operations:
                    self._apply(session, operation)
                session.commit()
            except Exception:
                session.rollback()
                raise

    def _apply(self, session: Session, operation: WriteOp) -> None:
        if isinstance(operation, Insert):
            session.add(operation.entity)
            session.flush()
            return
        model = operation.model
        if isinstance(operation, RowLock):
            lock_statement = (
                select(model)
                .where(*_scoped_clauses(model, operation.company_id, {"id": operation.entity_id}))
                .with_for_update(read=operation.shared)
            )
            if session.exec(lock_statement).first() is None:
                raise StaleWriteError(operation)
            return
        clauses = _scoped_clauses(model, operation.company_id, {"id": operation.entity_id, **operation.expected})
        if isinstance(operation, ConditionalUpdate):
            statement = sa.update(model).where(*clauses).values(**operation.changes)
        else:
            statement = sa.delete(model).where(*clauses)
        result = session.execute(statement)
        rowcount = getattr(result, "rowcount", None)
        if not rowcount:
            raise StaleWriteError(operation)
