"""
Default relationship resolvers for the academic tables.

Each resolver answers "who should hear about a change to this row?" with
plain SQL against the school schema, which is owned by the CRUD layer and
not mapped here. Resolvers never raise: a failed lookup is logged and
resolves to nobody.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

if TYPE_CHECKING:
    from schoolsync.sync.router import SyncEventRouter

log = structlog.get_logger()


GRADE_PRINCIPALS = text(
    """
    SELECT g.student_id AS principal_id FROM grades g WHERE g.id = :entity_id
    UNION
    SELECT c.teacher_id FROM grades g
        JOIN classes c ON c.id = g.class_id
        WHERE g.id = :entity_id
    UNION
    SELECT psr.parent_id FROM grades g
        JOIN parent_student_relationships psr ON psr.student_id = g.student_id
        WHERE g.id = :entity_id
    """
)

ATTENDANCE_PRINCIPALS = text(
    """
    SELECT a.student_id AS principal_id FROM attendance a WHERE a.id = :entity_id
    UNION
    SELECT c.teacher_id FROM attendance a
        JOIN classes c ON c.id = a.class_id
        WHERE a.id = :entity_id
    UNION
    SELECT psr.parent_id FROM attendance a
        JOIN parent_student_relationships psr ON psr.student_id = a.student_id
        WHERE a.id = :entity_id
    """
)

ASSIGNMENT_PRINCIPALS = text(
    """
    SELECT a.teacher_id AS principal_id FROM assignments a WHERE a.id = :entity_id
    UNION
    SELECT e.student_id FROM assignments a
        JOIN enrollments e ON e.class_id = a.class_id AND e.status = 'active'
        WHERE a.id = :entity_id
    UNION
    SELECT psr.parent_id FROM assignments a
        JOIN enrollments e ON e.class_id = a.class_id AND e.status = 'active'
        JOIN parent_student_relationships psr ON psr.student_id = e.student_id
        WHERE a.id = :entity_id
    """
)


class SqlResolver:
    """Runs one principal query for an integer entity id."""

    def __init__(self, session_factory: sessionmaker, query, name: str):
        self._session_factory = session_factory
        self._query = query
        self.name = name

    async def __call__(self, entity_id: str) -> list[str]:
        try:
            key = int(entity_id)
        except (TypeError, ValueError):
            log.debug("resolver.non_integer_id", resolver=self.name, entity_id=entity_id)
            return []

        try:
            async with self._session_factory() as session:
                result = await session.execute(self._query, {"entity_id": key})
                rows = result.all()
        except SQLAlchemyError as exc:
            log.error("resolver.query_failed", resolver=self.name, entity_id=entity_id, error=str(exc))
            return []

        return sorted({str(row[0]) for row in rows if row[0] is not None})


def register_default_resolvers(router: "SyncEventRouter", session_factory: sessionmaker) -> None:
    router.register_resolver("grades", SqlResolver(session_factory, GRADE_PRINCIPALS, "grades"), "grade")
    router.register_resolver(
        "attendance", SqlResolver(session_factory, ATTENDANCE_PRINCIPALS, "attendance"), "attendance"
    )
    router.register_resolver(
        "assignments", SqlResolver(session_factory, ASSIGNMENT_PRINCIPALS, "assignments"), "assignment"
    )
