"""
Transaction scoping for submission services.

A service either owns its transaction (a fresh session from its factory,
committed on success) or joins the caller's session, in which case the work
runs inside a SAVEPOINT and committing is left to the caller. Either way a
failure rolls back everything the unit wrote.
"""

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

SessionFactory = Callable[[], Session]


@contextmanager
def unit_of_work(
    session_factory: SessionFactory, session: Optional[Session] = None
) -> Iterator[Session]:
    if session is not None:
        with session.begin_nested():
            yield session
        return

    db = session_factory()
    try:
        with db.begin():
            yield db
    finally:
        db.close()
