from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer
from sqlalchemy.orm import as_declarative, declared_attr
from sqlalchemy.sql import func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@as_declarative()
class Base:
    id = Column(Integer, primary_key=True, index=True)
    # Set client-side so ordering keeps sub-second precision on every backend
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    __name__: str

    # to generate tablename from classname
    @declared_attr
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()  # type: ignore[no-any-return]
