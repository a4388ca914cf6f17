import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from db_models import Contact, LinkPrecedence
from db_setup import get_db_connection
from errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = "id, email, phoneNumber, linkedId, linkPrecedence, createdAt"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ContactStore:
    """Data access for the Contact table.

    A store built with ``connection`` is bound to an open transaction (see
    ``run_atomic``); otherwise every call opens and closes its own
    connection and each statement commits on its own.
    """

    def __init__(self, db_name: str = None, connection: sqlite3.Connection = None):
        self.db_name = db_name
        self._connection = connection

    @contextmanager
    def _cursor(self):
        if self._connection is not None:
            try:
                yield self._connection.cursor()
            except sqlite3.Error as exc:
                raise StorageError(str(exc)) from exc
            return

        try:
            conn = get_db_connection(self.db_name)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        try:
            yield conn.cursor()
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def find_by_email_or_phone(self, email: str = None, phone: str = None) -> List[Contact]:
        clauses = []
        params = []
        if email:
            clauses.append("email = ?")
            params.append(email)
        if phone:
            clauses.append("phoneNumber = ?")
            params.append(phone)
        if not clauses:
            return []

        query = f"""
            SELECT {_COLUMNS} FROM Contact
            WHERE deletedAt IS NULL
            AND ({' OR '.join(clauses)})
            ORDER BY createdAt ASC, id ASC
        """
        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [Contact.model_validate(dict(row)) for row in rows]

    def get_contact(self, contact_id: int) -> Optional[Contact]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_COLUMNS} FROM Contact WHERE id = ? AND deletedAt IS NULL",
                (contact_id,),
            )
            row = cursor.fetchone()
        return Contact.model_validate(dict(row)) if row else None

    def insert_contact(
        self,
        email: str = None,
        phone: str = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        linked_id: int = None,
    ) -> Contact:
        now = _now()
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (phone, email, linked_id, LinkPrecedence(precedence).value, now, now))
            cursor.execute(f"SELECT {_COLUMNS} FROM Contact WHERE id = ?", (cursor.lastrowid,))
            row = cursor.fetchone()
        return Contact.model_validate(dict(row))

    def update_linkage(self, contact_id: int, precedence: LinkPrecedence, linked_id: Optional[int]) -> None:
        with self._cursor() as cursor:
            cursor.execute("""
                UPDATE Contact
                SET linkedId = ?, linkPrecedence = ?, updatedAt = ?
                WHERE id = ?
            """, (linked_id, LinkPrecedence(precedence).value, _now(), contact_id))

    def bulk_relink(self, old_linked_id: int, new_linked_id: int) -> int:
        """Point every secondary of ``old_linked_id`` at ``new_linked_id``."""
        with self._cursor() as cursor:
            cursor.execute("""
                UPDATE Contact
                SET linkedId = ?, updatedAt = ?
                WHERE linkedId = ? AND linkPrecedence = 'secondary'
            """, (new_linked_id, _now(), old_linked_id))
            return cursor.rowcount

    def find_identity(self, primary_id: int) -> List[Contact]:
        """Return the primary followed by its secondaries, oldest first."""
        primary = self.get_contact(primary_id)
        if primary is None:
            return []

        with self._cursor() as cursor:
            cursor.execute(f"""
                SELECT {_COLUMNS} FROM Contact
                WHERE linkedId = ? AND deletedAt IS NULL
                ORDER BY createdAt ASC, id ASC
            """, (primary_id,))
            secondaries = cursor.fetchall()
        return [primary] + [Contact.model_validate(dict(row)) for row in secondaries]

    def run_atomic(self, unit_of_work: Callable[["ContactStore"], T]) -> T:
        """Run ``unit_of_work`` inside one write transaction.

        ``BEGIN IMMEDIATE`` takes sqlite's write lock up front so concurrent
        merges are serialized. Any exception rolls the whole unit back.
        """
        if self._connection is not None:
            return unit_of_work(self)

        try:
            conn = get_db_connection(self.db_name)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

        try:
            conn.execute("BEGIN IMMEDIATE")
            result = unit_of_work(type(self)(self.db_name, connection=conn))
            conn.execute("COMMIT")
            return result
        except sqlite3.Error as exc:
            _rollback(conn)
            raise StorageError(str(exc)) from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")
