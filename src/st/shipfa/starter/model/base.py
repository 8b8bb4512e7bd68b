from sqlalchemy import String, orm
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str255 = Annotated[str, 255]
str512 = Annotated[str, 512]
str1024 = Annotated[str, 1024]
ulidpk = Annotated[str, mapped_column(String(26), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str255: String(255),
        str512: String(512),
        str1024: String(1024),
        ulidpk: String(26),
    }
