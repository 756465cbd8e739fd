"""
Demo data model: a cats table read through the cache.

The cats list is cached under one key; any committed insert, update or
delete of a Cat invalidates it through the InvalidationRegistry hooks.
"""

import logging
import threading
import time
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

logger = logging.getLogger(__name__)

CATS_KEY = "cats"


class Cat(SQLModel, table=True):
    __tablename__ = "cat"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=100, index=True)
    color: str = Field(max_length=50)


class CatRead(SQLModel):
    """Detached cat as stored in the cache."""

    id: int
    name: str
    color: str


def create_demo_engine(database_url: str = "sqlite://") -> Engine:
    """
    Create an engine with the cat table, in-memory SQLite by default.

    The in-memory database is shared by every thread through one connection.
    """
    engine_kwargs = {"echo": False}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_kwargs)
    SQLModel.metadata.create_all(engine, tables=[Cat.__table__])
    return engine


class CatRepository:
    """Source of truth for cats; counts its list queries."""

    def __init__(self, engine: Engine, latency: float = 0.0):
        """
        Args:
            engine: Engine holding the cat table
            latency: Extra seconds each list query takes, to widen the miss window
        """
        self.engine = engine
        self.latency = latency
        self.session_factory = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
        self.queries = 0
        self._lock = threading.Lock()

    def list_cats(self) -> List[CatRead]:
        with self._lock:
            self.queries += 1
        if self.latency:
            time.sleep(self.latency)

        with self.session_factory() as session:
            cats = session.exec(select(Cat).order_by(Cat.id)).all()
            logger.debug(f"Loaded {len(cats)} cats from database")
            return [CatRead.model_validate(cat, from_attributes=True) for cat in cats]

    def add_cat(self, name: str, color: str) -> Cat:
        with self.session_factory() as session:
            cat = Cat(name=name, color=color)
            session.add(cat)
            session.commit()
            return cat

    def rename_cat(self, cat_id: int, name: str) -> Optional[Cat]:
        with self.session_factory() as session:
            cat = session.get(Cat, cat_id)
            if cat is None:
                return None
            cat.name = name
            session.commit()
            return cat

    def delete_cat(self, cat_id: int) -> bool:
        with self.session_factory() as session:
            cat = session.get(Cat, cat_id)
            if cat is None:
                return False
            session.delete(cat)
            session.commit()
            return True
