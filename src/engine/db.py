from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker

from engine.errors import StoreUnavailable
from engine.models import Base


def build_engine(database_url):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Workers share the file from several threads; wait on the write lock instead of failing.
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)


def is_unavailable(error):
    """
    True for driver errors that a later retry can get past: lost connections, locked databases,
    timeouts. Integrity and programming errors repeat on every retry and are not.
    """
    return isinstance(error, (OperationalError, InterfaceError)) or bool(getattr(error, "connection_invalidated", False))


@contextmanager
def session_scope(session_factory, db=None):
    """
    Yield a session that commits on success and rolls back on error.

    When `db` is given the caller owns the transaction: it is yielded as is and neither
    committed nor closed here, so several store operations can share one atomic unit.
    Connection level failures surface as StoreUnavailable; other driver errors propagate as raised.
    """
    if db is not None:
        try:
            yield db
        except DBAPIError as e:
            if is_unavailable(e):
                raise StoreUnavailable(str(e)) from e
            raise
        return

    db = session_factory()
    try:
        yield db
        db.commit()
    except DBAPIError as e:
        db.rollback()
        if is_unavailable(e):
            raise StoreUnavailable(str(e)) from e
        raise
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
