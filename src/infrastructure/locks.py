# src/infrastructure/locks.py

import logging
from datetime import datetime, timedelta
from typing import Callable, Protocol
from uuid import uuid4

from sqlalchemy import delete, insert, text, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from src.infrastructure.config import WEBHOOK_LOCK_TTL_SECONDS
from src.infrastructure.db.models import AdvisoryLockRow
from src.infrastructure.db.session import utc_now

logger = logging.getLogger(__name__)


class AdvisoryLock(Protocol):
    def try_lock(self, key: str) -> bool: ...

    def unlock(self, key: str) -> None: ...


class PostgresAdvisoryLock:
    """
    Session-level pg advisory lock. The lock belongs to the connection that
    took it, so that connection is held until unlock.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._connections: dict[str, Connection] = {}

    def try_lock(self, key: str) -> bool:
        conn = self.engine.connect()
        try:
            locked = conn.execute(
                text("SELECT pg_try_advisory_lock(hashtext(:key))"),
                {"key": key},
            ).scalar()
            conn.commit()
        except Exception:
            conn.close()
            raise

        if not locked:
            conn.close()
            return False

        self._connections[key] = conn
        return True

    def unlock(self, key: str) -> None:
        conn = self._connections.pop(key, None)
        if conn is None:
            return
        try:
            conn.execute(
                text("SELECT pg_advisory_unlock(hashtext(:key))"),
                {"key": key},
            )
            conn.commit()
        finally:
            conn.close()


class TableAdvisoryLock:
    """
    Advisory lock backed by a row per key, for databases without native
    advisory locks. Rows carry a TTL so a crashed holder cannot wedge a key.
    """

    def __init__(
        self,
        engine: Engine,
        ttl_seconds: int = WEBHOOK_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._tokens: dict[str, str] = {}

    def try_lock(self, key: str) -> bool:
        token = str(uuid4())
        now = self.clock()
        expires_at = now + self.ttl

        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(AdvisoryLockRow).values(
                        key=key,
                        owner_token=token,
                        expires_at=expires_at,
                    )
                )
        except IntegrityError:
            with self.engine.begin() as conn:
                taken_over = conn.execute(
                    update(AdvisoryLockRow)
                    .where(AdvisoryLockRow.key == key)
                    .where(AdvisoryLockRow.expires_at < now)
                    .values(owner_token=token, expires_at=expires_at)
                ).rowcount
            if taken_over == 0:
                return False
            logger.warning("Took over expired advisory lock %s", key)

        self._tokens[key] = token
        return True

    def unlock(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        with self.engine.begin() as conn:
            conn.execute(
                delete(AdvisoryLockRow)
                .where(AdvisoryLockRow.key == key)
                .where(AdvisoryLockRow.owner_token == token)
            )


def advisory_lock_for(engine: Engine) -> AdvisoryLock:
    if engine.dialect.name == "postgresql":
        return PostgresAdvisoryLock(engine)
    return TableAdvisoryLock(engine)
