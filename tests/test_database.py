import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from database import SQLITE_BUSY_TIMEOUT_MS, Base, build_engine, session_scope
from models import User


def _factory(tmp_path) -> sessionmaker:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def test_sqlite_connections_get_pragmas(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")

    with engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
        assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
        assert (
            conn.exec_driver_sql("PRAGMA busy_timeout").scalar()
            == SQLITE_BUSY_TIMEOUT_MS
        )


def test_session_scope_commits_on_success(tmp_path) -> None:
    factory = _factory(tmp_path)

    with session_scope(factory) as session:
        session.add(User(name="Ana", email="ana@example.com", password_hash="x"))

    with factory() as session:
        assert session.scalar(select(func.count(User.id))) == 1


def test_session_scope_rolls_back_on_error(tmp_path) -> None:
    factory = _factory(tmp_path)

    with pytest.raises(RuntimeError):
        with session_scope(factory) as session:
            session.add(User(name="Ana", email="ana@example.com", password_hash="x"))
            session.flush()
            raise RuntimeError("boom")

    with factory() as session:
        assert session.scalar(select(func.count(User.id))) == 0
