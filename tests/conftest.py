"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from personalweb.blog import Database, Store, User, app, init_db

_names = itertools.count(1)
_ips = itertools.count(1)


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    db_file = tmp_path_factory.mktemp("data") / "test.sqlite3"
    return db_file


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=f"sqlite:///{_tmp_db_path}",
    )
    with app.app_context():
        init_db()


def _next_ip() -> str:
    n = next(_ips)
    return f"10.0.{n // 250}.{n % 250 + 1}"


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Every client gets its own REMOTE_ADDR so the login rate-limit
    (keyed by IP) never bleeds between tests.
    """
    with app.test_client() as client:
        client.environ_base["REMOTE_ADDR"] = _next_ip()
        with app.app_context():
            yield client


@pytest.fixture
def store(tmp_path: Path) -> Generator[Store, None, None]:
    """A private database per test, no Flask involved."""
    st = Store(Database(str(tmp_path / "store.sqlite3")))
    yield st
    st.db.close()


def unique_name(prefix: str = "user") -> str:
    return f"{prefix}{next(_names)}"


@pytest.fixture
def make_user() -> Callable[..., User]:
    """Register an account in the app database and return it."""

    def _make(username: str | None = None, password: str = "hunter2") -> User:
        st = Store(Database(app.config["DATABASE"]))
        try:
            return st.users.register(username or unique_name(), password)
        finally:
            st.db.close()

    return _make


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch personalweb.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from personalweb import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
