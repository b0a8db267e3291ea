from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    DateTime,
    Boolean,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = [
    "Base",
    "Column",
    "String",
    "Integer",
    "Float",
    "DateTime",
    "Boolean",
    "Text",
    "UniqueConstraint",
    "Index",
]
