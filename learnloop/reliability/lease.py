"""
Idempotency leases.

A lease is a time-bounded lock on a key such as "generate_output:input:42".
acquire() returns a token when the key was free (or its previous lease had
expired) and None otherwise; release() only succeeds with the matching token,
so a worker whose lease expired and was taken over cannot release the new
holder's lease.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Protocol

from loguru import logger
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from learnloop.db.database import get_session_factory
from learnloop.db.models import JobLease
from learnloop.time_utils import utcnow


class LeaseService(Protocol):
    def acquire(self, key: str, ttl_seconds: float) -> str | None: ...

    def release(self, key: str, token: str) -> bool: ...

    def is_held(self, key: str) -> bool: ...


class InMemoryLeaseService:
    """Process-local leases guarded by a lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: dict[str, tuple[str, float]] = {}

    def acquire(self, key: str, ttl_seconds: float) -> str | None:
        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return None
            token = str(uuid.uuid4())
            self._leases[key] = (token, now + ttl_seconds)
            return token

    def release(self, key: str, token: str) -> bool:
        with self._lock:
            current = self._leases.get(key)
            if current is None or current[0] != token:
                return False
            del self._leases[key]
            return True

    def is_held(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            current = self._leases.get(key)
            return current is not None and current[1] > now


class DatabaseLeaseService:
    """Leases stored in the job_leases table; shared by every worker process."""

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory or get_session_factory()

    def acquire(self, key: str, ttl_seconds: float) -> str | None:
        token = str(uuid.uuid4())
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)

        session = self._session_factory()
        try:
            # Take over an expired lease
            taken = session.execute(
                update(JobLease)
                .where(JobLease.key == key, JobLease.expires_at <= now)
                .values(token=token, expires_at=expires_at)
            )
            if taken.rowcount == 1:
                session.commit()
                return token

            session.execute(insert(JobLease).values(key=key, token=token, expires_at=expires_at))
            session.commit()
            return token
        except IntegrityError:
            session.rollback()
            return None
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            session.rollback()
            raise
        finally:
            session.close()

    def release(self, key: str, token: str) -> bool:
        session = self._session_factory()
        try:
            result = session.execute(delete(JobLease).where(JobLease.key == key, JobLease.token == token))
            session.commit()
            if result.rowcount != 1:
                logger.debug(f"Lease {key} was not held by token {token}")
            return result.rowcount == 1
        except Exception:  # Intentionally broad - rollback on any error before re-raising
            session.rollback()
            raise
        finally:
            session.close()

    def is_held(self, key: str) -> bool:
        session = self._session_factory()
        try:
            row = session.execute(
                select(JobLease.key).where(JobLease.key == key, JobLease.expires_at > utcnow())
            ).first()
            return row is not None
        finally:
            session.close()
