"""
Transaction boundary for service-layer writes.

Usage:
    with atomic():
        ...mutate models...
    # committed here; on any exception the session is rolled back

A stale version counter on a request row (another writer got there first)
surfaces as AlreadyResolved.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from reqdesk.core.exceptions import AlreadyResolved
from reqdesk.models import db

logger = logging.getLogger(__name__)


@contextmanager
def atomic(*, integrity_is_conflict: bool = False):
    """Commit on success, roll back and re-raise on failure.

    ``integrity_is_conflict`` maps unique-index violations to AlreadyResolved;
    the approval engine uses it because a second pending record can only
    come from a concurrent writer.
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.info("Concurrent update detected: %s", exc)
        raise AlreadyResolved() from exc
    except IntegrityError as exc:
        db.session.rollback()
        if integrity_is_conflict:
            logger.info("Concurrent approval write rejected: %s", exc.orig)
            raise AlreadyResolved() from exc
        raise
    except Exception:
        db.session.rollback()
        raise
