"""
tests/conftest.py

Shared fixtures: an in-memory SQLite database carrying the workflow schema,
plus statement text builders.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401 registers workflow models on Base.metadata
from db.base import Base

STATEMENT_HEADER = (
    "Type,Product,Started Date,Completed Date,Description,Amount,Fee,Currency,State,Balance"
)


def statement_line(
    started_date: str,
    description: str,
    amount: str,
    *,
    type_: str = "CARD_PAYMENT",
    fee: str = "0.00",
    balance: str = "1000.00",
) -> str:
    return (
        f"{type_},Current,{started_date},{started_date},{description},{amount},"
        f"{fee},GBP,COMPLETED,{balance}"
    )


def statement_csv(*lines: str, header: str = STATEMENT_HEADER) -> str:
    return "\n".join([header, *lines]) + "\n"


@pytest.fixture()
def sqlite_engine() -> Iterator[Engine]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(sqlite_engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=sqlite_engine,
        class_=Session,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


class InlineExecutor:
    """Runs submitted tasks immediately on the calling thread."""

    def __init__(self) -> None:
        self.submitted: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []

    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.submitted.append((task, args))
        task(*args, **kwargs)


class DeferredExecutor:
    """Records submitted tasks without running them, like a process that dies before dispatch."""

    def __init__(self) -> None:
        self.submitted: list[tuple[Callable[..., Any], tuple[Any, ...]]] = []

    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.submitted.append((task, args))


@pytest.fixture()
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture()
def deferred_executor() -> DeferredExecutor:
    return DeferredExecutor()
