"""
Generic repository over SQLAlchemy mapped classes.

A `Repository[ModelT]` offers CRUD, filtered queries, counting, pagination
and transaction scoping for one record type. It holds no state beyond the
model class and the `Database` (or `Database` view) it delegates to; every
method is a single request-scoped round trip.

Usage:
    users = Repository(User, db)
    user = User(name="Jane Doe", email="jane@example.com", age=28)
    await users.create(user)
    adults = await users.find_where("age >= ?", 18)
    page = await users.paginate(page=2, page_size=20, ctx=Context(timeout=2.0))
"""

from __future__ import annotations

from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

from sqlalchemy import Column, and_, delete, func, inspect as sa_inspect, select, text
from sqlalchemy.exc import ArgumentError, NoInspectionAvailable
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapper
from sqlalchemy.sql.elements import ColumnElement, TextClause

from sqlrepo.context import Context
from sqlrepo.errors import InvalidArgumentError, InvalidConfigurationError, NotFoundError
from sqlrepo.infrastructure.database import Database

ModelT = TypeVar("ModelT")
R = TypeVar("R")


class Page(NamedTuple, Generic[ModelT]):
    """One page of results plus the row count across all pages."""

    items: List[ModelT]
    total: int


def bind_positional(
    predicate: str, args: Sequence[Any], operation: str = "find_where"
) -> Tuple[str, Dict[str, Any]]:
    """
    Rewrite ``?`` placeholders in `predicate` as named binds.

    Placeholders inside single- or double-quoted literals are left alone.
    Returns the rewritten SQL and the bind values keyed by generated name.

    Raises
    ------
    InvalidArgumentError
        If the number of placeholders differs from the number of arguments.
    """
    parts: List[str] = []
    binds: Dict[str, Any] = {}
    quote: Optional[str] = None
    for char in predicate:
        if quote is not None:
            if char == quote:
                quote = None
            parts.append(char)
        elif char in ("'", '"'):
            quote = char
            parts.append(char)
        elif char == "?":
            name = f"p{len(binds)}"
            if len(binds) >= len(args):
                raise InvalidArgumentError(
                    f"predicate has more placeholders than the {len(args)} argument(s) given",
                    operation,
                )
            binds[name] = args[len(binds)]
            parts.append(f":{name}")
        else:
            parts.append(char)
    if len(binds) != len(args):
        raise InvalidArgumentError(
            f"predicate has {len(binds)} placeholder(s) but {len(args)} argument(s) were given",
            operation,
        )
    return "".join(parts), binds


class Repository(Generic[ModelT]):
    """
    CRUD and query operations for one mapped record type.

    Parameters
    ----------
    model : type
        SQLAlchemy mapped class with a primary key.
    db : Database
        Connection manager, context-bound view or transaction-bound view.

    Every operation accepts an optional keyword-only `ctx`; when omitted the
    context bound to `db` applies.
    """

    def __init__(self, model: Type[ModelT], db: Database) -> None:
        try:
            mapper = sa_inspect(model)
        except NoInspectionAvailable as error:
            raise InvalidConfigurationError(
                f"{model!r} is not a mapped class", "repository"
            ) from error
        if not isinstance(mapper, Mapper):
            raise InvalidConfigurationError(f"{model!r} is not a mapped class", "repository")
        self.model = model
        self.db = db
        self._mapper: Mapper[Any] = mapper
        self._primary_key: Tuple[Column[Any], ...] = tuple(mapper.primary_key)

    def __repr__(self) -> str:
        return f"Repository({self.model.__name__})"

    def with_context(self, ctx: Context) -> "Repository[ModelT]":
        return Repository(self.model, self.db.with_context(ctx))

    # Helpers -----------------------------------------------------------------

    def _check_entity(self, entity: Any, operation: str) -> None:
        if not isinstance(entity, self.model):
            raise InvalidArgumentError(
                f"expected {self.model.__name__}, got {type(entity).__name__}", operation
            )

    def _identity_clause(self, values: Sequence[Any], operation: str) -> ColumnElement[bool]:
        if len(values) != len(self._primary_key):
            raise InvalidArgumentError(
                f"{self.model.__name__} has a {len(self._primary_key)}-column primary key, "
                f"got {len(values)} value(s)",
                operation,
            )
        if any(value is None for value in values):
            raise InvalidArgumentError("primary key must not be None", operation)
        return and_(*(column == value for column, value in zip(self._primary_key, values)))

    @staticmethod
    def _identity_values(id: Any) -> Tuple[Any, ...]:
        return tuple(id) if isinstance(id, (tuple, list)) else (id,)

    def _where(
        self, predicate: str, args: Sequence[Any], params: Dict[str, Any], operation: str
    ) -> TextClause:
        if not predicate or not predicate.strip():
            raise InvalidArgumentError("predicate must not be empty", operation)
        sql, binds = bind_positional(predicate, args, operation)
        overlap = binds.keys() & params.keys()
        if overlap:
            raise InvalidArgumentError(f"reserved parameter names: {sorted(overlap)}", operation)
        try:
            return text(sql).bindparams(**binds, **params)
        except ArgumentError as error:
            raise InvalidArgumentError(str(error), operation) from error

    @staticmethod
    async def _load_expired(session: AsyncSession, entity: Any) -> None:
        # Columns the flush expired (server defaults, SQL-expression onupdate)
        # have to be loaded explicitly under asyncio.
        expired = sa_inspect(entity).expired_attributes
        if expired:
            await session.refresh(entity, attribute_names=sorted(expired))

    # Writes ------------------------------------------------------------------

    async def create(self, entity: ModelT, *, ctx: Optional[Context] = None) -> ModelT:
        """
        Insert `entity`; generated primary keys are populated on it.
        """
        self._check_entity(entity, "create")
        async with self.db.scope("create", ctx, commit=True) as session:
            session.add(entity)
            await session.flush()
            await self._load_expired(session, entity)
        return entity

    async def update(self, entity: ModelT, *, ctx: Optional[Context] = None) -> ModelT:
        """
        Save every column of `entity`, inserting it when its primary key is
        unknown. Column values written by the database (keys, timestamps)
        are copied back onto `entity`.
        """
        self._check_entity(entity, "update")
        async with self.db.scope("update", ctx, commit=True) as session:
            merged = await session.merge(entity)
            await session.flush()
            await self._load_expired(session, merged)
            if merged is not entity:
                for attr in self._mapper.column_attrs:
                    setattr(entity, attr.key, getattr(merged, attr.key))
        return entity

    async def delete(self, entity: ModelT, *, ctx: Optional[Context] = None) -> None:
        """
        Delete the row with `entity`'s primary key. Matching no row is not an
        error.
        """
        self._check_entity(entity, "delete")
        values = self._mapper.primary_key_from_instance(entity)
        clause = self._identity_clause(values, "delete")
        async with self.db.scope("delete", ctx, commit=True) as session:
            await session.execute(delete(self.model).where(clause))

    async def delete_by_id(self, id: Any, *, ctx: Optional[Context] = None) -> None:
        """
        Delete the row with primary key `id` (a tuple for composite keys).
        """
        clause = self._identity_clause(self._identity_values(id), "delete_by_id")
        async with self.db.scope("delete_by_id", ctx, commit=True) as session:
            await session.execute(delete(self.model).where(clause))

    # Reads -------------------------------------------------------------------

    async def find_by_id(self, id: Any, *, ctx: Optional[Context] = None) -> ModelT:
        """
        Load the record with primary key `id`.

        Raises
        ------
        NotFoundError
            If no row has that key.
        """
        clause = self._identity_clause(self._identity_values(id), "find_by_id")
        async with self.db.scope("find_by_id", ctx) as session:
            entity = (await session.scalars(select(self.model).where(clause))).first()
        if entity is None:
            raise NotFoundError(f"{self.model.__name__} {id!r} not found", "find_by_id")
        return entity

    async def exists(self, id: Any, *, ctx: Optional[Context] = None) -> bool:
        clause = self._identity_clause(self._identity_values(id), "exists")
        async with self.db.scope("exists", ctx) as session:
            count = await session.scalar(
                select(func.count()).select_from(self.model).where(clause)
            )
        return bool(count)

    async def find_all(self, *, ctx: Optional[Context] = None) -> List[ModelT]:
        """Every record, in backend order."""
        async with self.db.scope("find_all", ctx) as session:
            return list((await session.scalars(select(self.model))).all())

    async def count(self, *, ctx: Optional[Context] = None) -> int:
        async with self.db.scope("count", ctx) as session:
            return int(await session.scalar(select(func.count()).select_from(self.model)) or 0)

    async def find_where(
        self,
        predicate: str,
        *args: Any,
        ctx: Optional[Context] = None,
        **params: Any,
    ) -> List[ModelT]:
        """
        Records matching a backend-native SQL predicate.

        Positional arguments fill ``?`` placeholders in order; keyword
        arguments fill ``:name`` placeholders. The predicate is passed to the
        database as-is otherwise. No match yields an empty list.
        """
        clause = self._where(predicate, args, params, "find_where")
        async with self.db.scope("find_where", ctx) as session:
            return list((await session.scalars(select(self.model).where(clause))).all())

    async def first_where(
        self,
        predicate: str,
        *args: Any,
        ctx: Optional[Context] = None,
        **params: Any,
    ) -> ModelT:
        """
        First record (by primary key) matching `predicate`.

        Raises
        ------
        NotFoundError
            If nothing matches.
        """
        clause = self._where(predicate, args, params, "first_where")
        stmt = select(self.model).where(clause).order_by(*self._primary_key).limit(1)
        async with self.db.scope("first_where", ctx) as session:
            entity = (await session.scalars(stmt)).first()
        if entity is None:
            raise NotFoundError(f"no {self.model.__name__} matches {predicate!r}", "first_where")
        return entity

    async def paginate(
        self, page: int, page_size: int, *, ctx: Optional[Context] = None
    ) -> Page[ModelT]:
        """
        The `page`-th (1-indexed) slice of `page_size` records ordered by
        primary key, plus the total row count.

        Raises
        ------
        InvalidArgumentError
            If `page` or `page_size` is less than 1.
        """
        if page < 1:
            raise InvalidArgumentError(f"page must be >= 1, got {page}", "paginate")
        if page_size < 1:
            raise InvalidArgumentError(f"page_size must be >= 1, got {page_size}", "paginate")

        stmt = (
            select(self.model)
            .order_by(*self._primary_key)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        async with self.db.scope("paginate", ctx) as session:
            total = await session.scalar(select(func.count()).select_from(self.model))
            items = list((await session.scalars(stmt)).all())
        return Page(items=items, total=int(total or 0))

    # Transactions ------------------------------------------------------------

    async def transaction(
        self,
        fn: Callable[["Repository[ModelT]"], Awaitable[R]],
        *,
        ctx: Optional[Context] = None,
    ) -> R:
        """
        Run `fn` with a repository bound to a new transaction.

        Commits when `fn` returns, rolls back and re-raises when it raises.
        Use ``Repository(Other, tx.db)`` inside `fn` to touch other tables in
        the same transaction.
        """

        async def unit(tx: Database) -> R:
            return await fn(Repository(self.model, tx))

        return await self.db.transaction(unit, ctx)


__all__ = ["Page", "Repository", "bind_positional"]
