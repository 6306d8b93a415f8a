"""Generic CRUD utility functions for SQLAlchemy models."""

from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy.orm import Session

from datasync.core.db import Base

ModelT = TypeVar("ModelT", bound=Base)


def get_by_id(db: Session, model: type[ModelT], id: Any, refresh: bool = False) -> ModelT | None:
    """Retrieve a single record by its primary key.

    With ``refresh=True`` the row is re-read even if the session already holds
    it, picking up commits made through other sessions.  Returns the model
    instance or ``None`` if not found.
    """
    return db.get(model, id, populate_existing=refresh)


def get_all(
    db: Session,
    model: type[ModelT],
    filters: dict[str, Any] | None = None,
    order_by: Any = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[ModelT]:
    """Retrieve a list of records with optional column-value filters.

    Parameters
    ----------
    db:
        Active database session.
    model:
        The SQLAlchemy model class to query.
    filters:
        Optional dict of ``{column_name: value}`` filters.  A list or tuple
        value is matched with ``IN``; anything else with equality.
    order_by:
        Optional column expression passed to ``Query.order_by``.
    limit:
        Maximum number of records to return (default: no limit).
    offset:
        Number of records to skip (default 0).
    """
    query = db.query(model)
    if filters:
        for column_name, value in filters.items():
            column = getattr(model, column_name, None)
            if column is None:
                continue
            if isinstance(value, (list, tuple, set)):
                query = query.filter(column.in_(list(value)))
            else:
                query = query.filter(column == value)
    if order_by is not None:
        query = query.order_by(order_by)
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def create(db: Session, model: type[ModelT], **kwargs: Any) -> ModelT:
    """Create a new record and commit it to the database.

    Returns the newly created model instance with its generated id.
    """
    instance = model(**kwargs)
    db.add(instance)
    db.commit()
    db.refresh(instance)
    return instance

