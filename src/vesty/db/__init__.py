from functools import lru_cache

from sqlalchemy import Engine
from sqlmodel import SQLModel, create_engine

from ..settings import get_settings

# Needed for SQLModel to create tables for all models
from .models import *  # noqa: F403


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    connect_args = {}
    if settings.DATABASE_URL.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def create_db_and_tables():
    SQLModel.metadata.create_all(get_engine())


def dispose_engine():
    if get_engine.cache_info().currsize:
        get_engine().dispose()
        get_engine.cache_clear()
