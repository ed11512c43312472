from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only aliases the rowid (and honours AUTOINCREMENT) for INTEGER keys.
VersionType = BigInteger().with_variant(Integer, "sqlite")
