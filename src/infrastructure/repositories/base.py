# src/infrastructure/repositories/base.py

from sqlalchemy.orm import Session
from sqlalchemy.sql.dml import Update


class Repository:

    def __init__(self, db: Session):
        self.db = db

    def conditional_update(self, stmt: Update) -> int:
        """
        Executes an UPDATE guarded by a WHERE predicate on current state and
        returns the affected row count. Zero means another actor got there
        first; callers treat that as a no-op.
        """
        # autoflush is off; pending ORM changes must land before the UPDATE
        # and loaded objects must not keep serving pre-update values.
        self.db.flush()
        result = self.db.execute(
            stmt.execution_options(synchronize_session=False)
        )
        self.db.expire_all()
        return result.rowcount
