from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# SQLite only autoincrements an INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
