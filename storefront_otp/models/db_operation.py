from sqlalchemy import delete, or_, select, update

from storefront_otp.models.schema.db_config import Databases


def _conditions(model, filters: dict) -> list:
    conditions = []
    for field, value in filters.items():
        if not hasattr(model, field):
            raise ValueError(
                f"{model.__name__} has no column '{field}'"
            )
        column = getattr(model, field)
        if value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == value)
    return conditions


def _select_records(
    session, db: str, *, order_by=None, descending=False, limit=None, **kwargs
):
    model = getattr(Databases, db)

    stmt = select(model).where(*_conditions(model, kwargs))

    if order_by is not None:
        column = getattr(model, order_by)
        if descending:
            stmt = stmt.order_by(column.desc(), model.id.desc())
        else:
            stmt = stmt.order_by(column, model.id)
    if limit is not None:
        stmt = stmt.limit(limit)

    return session.execute(stmt).scalars().all()


def _add_record(session, db: str, **kwargs):
    model = getattr(Databases, db)

    instance = model(**kwargs)
    session.add(instance)
    session.flush()
    return instance


def _update_records(session, db: str, *, values: dict, **filters) -> int:
    model = getattr(Databases, db)

    for field in values:
        if not hasattr(model, field):
            raise ValueError(
                f"{model.__name__} has no column '{field}'"
            )

    result = session.execute(
        update(model)
        .where(*_conditions(model, filters))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _delete_records(session, db: str, **kwargs) -> int:
    model = getattr(Databases, db)

    result = session.execute(
        delete(model)
        .where(*_conditions(model, kwargs))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _delete_inert_records(session, db: str, now, **kwargs) -> int:
    model = getattr(Databases, db)

    result = session.execute(
        delete(model)
        .where(
            or_(model.used.is_(True), model.expires_at <= now),
            *_conditions(model, kwargs),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount
