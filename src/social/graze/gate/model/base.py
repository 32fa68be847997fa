from datetime import datetime, timezone

from sqlalchemy import DateTime, String, orm
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str512 = Annotated[str, 512]
ulidpk = Annotated[str, mapped_column(String(26), primary_key=True)]
timestamptz = Annotated[datetime, mapped_column(DateTime(timezone=True))]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
        ulidpk: String(26),
        timestamptz: DateTime(timezone=True),
    }
