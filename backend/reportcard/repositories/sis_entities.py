"""
Repositories for the synced SIS tables and a registry keyed by entity type.
"""

import logging
from datetime import date
from typing import Any, Dict, Hashable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reportcard.core.clock import utcnow
from reportcard.integrations.sis.errors import PersistenceError, UnknownEntityTypeError
from reportcard.models import (
    School, Term, Teacher, Student, Course, Section, Standard, AttendanceCode,
    StoredGrade, Attendance, Person, EmailAddress, PhoneNumber, PersonEmailAssoc,
    PersonPhoneAssoc, StudentContactAssoc
)
from reportcard.repositories.base import UpsertRepository

logger = logging.getLogger(__name__)


class SchoolRepository(UpsertRepository[School]):
    model = School


class TermRepository(UpsertRepository[Term]):
    model = Term

    async def get_current(self) -> Optional[Term]:
        result = await self.db.execute(select(Term).where(Term.is_current.is_(True)).limit(1))
        return result.scalar_one_or_none()

    async def set_current_for(self, today: date) -> Optional[Term]:
        """Flag the term in effect on ``today`` as current.

        Preference order: the year record covering today, then the
        latest-starting term covering today, then the latest-starting term.
        """
        try:
            terms = (await self.db.execute(select(Term))).scalars().all()
            current = self.pick_current(terms, today)

            await self.db.execute(update(Term).where(Term.is_current.is_(True)).values(is_current=False))
            if current is not None:
                await self.db.execute(update(Term).where(Term.id == current.id).values(is_current=True))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to set current term: {e}", original_exception=e)

        if current is not None:
            logger.info(f"Current term set to {current.name} ({current.first_day} - {current.last_day})")
        return current

    @staticmethod
    def pick_current(terms: List[Term], today: date) -> Optional[Term]:
        covering = [
            t for t in terms
            if t.first_day and t.last_day and t.first_day <= today <= t.last_day
        ]
        by_start = lambda t: t.first_day  # noqa: E731

        year_records = [t for t in covering if t.is_year_rec]
        if year_records:
            return max(year_records, key=by_start)
        if covering:
            return max(covering, key=by_start)

        dated = [t for t in terms if t.first_day]
        return max(dated, key=by_start) if dated else None


class TeacherRepository(UpsertRepository[Teacher]):
    model = Teacher


class StudentRepository(UpsertRepository[Student]):
    model = Student

    async def update_local_fields(self, student_id: int, **fields) -> Optional[Student]:
        """Write portal-owned fields (e.g. ``chinese_name``) outside of any sync."""
        unknown = set(fields) - set(Student.LOCAL_FIELDS)
        if unknown:
            raise ValueError(f"Not portal-owned student fields: {', '.join(sorted(unknown))}")

        student = await self.db.get(Student, student_id)
        if student is None:
            return None
        for name, value in fields.items():
            setattr(student, name, value)
        await self.db.commit()
        return student

    async def mark_pdf_generated(self, student_id: int) -> Optional[Student]:
        return await self.update_local_fields(student_id, pdf_generated=True, pdf_generated_at=utcnow())


class CourseRepository(UpsertRepository[Course]):
    model = Course


class SectionRepository(UpsertRepository[Section]):
    model = Section


class StandardRepository(UpsertRepository[Standard]):
    model = Standard


class AttendanceCodeRepository(UpsertRepository[AttendanceCode]):
    model = AttendanceCode


class StoredGradeRepository(UpsertRepository[StoredGrade]):
    model = StoredGrade


class AttendanceRepository(UpsertRepository[Attendance]):
    model = Attendance


class PersonRepository(UpsertRepository[Person]):
    model = Person


class EmailAddressRepository(UpsertRepository[EmailAddress]):
    model = EmailAddress


class PhoneNumberRepository(UpsertRepository[PhoneNumber]):
    model = PhoneNumber


class PersonEmailAssocRepository(UpsertRepository[PersonEmailAssoc]):
    model = PersonEmailAssoc


class PersonPhoneAssocRepository(UpsertRepository[PersonPhoneAssoc]):
    model = PersonPhoneAssoc


class StudentContactRepository(UpsertRepository[StudentContactAssoc]):
    model = StudentContactAssoc


REPOSITORIES = {
    "schools": SchoolRepository,
    "terms": TermRepository,
    "teachers": TeacherRepository,
    "students": StudentRepository,
    "courses": CourseRepository,
    "sections": SectionRepository,
    "standards": StandardRepository,
    "attendance-codes": AttendanceCodeRepository,
    "grades": StoredGradeRepository,
    "attendance": AttendanceRepository,
    "persons": PersonRepository,
    "email-addresses": EmailAddressRepository,
    "phone-numbers": PhoneNumberRepository,
    "person-email-assocs": PersonEmailAssocRepository,
    "person-phone-assocs": PersonPhoneAssocRepository,
    "student-contacts": StudentContactRepository,
}


class RepositoryRegistry:
    """Hands out one repository per entity type, all sharing a session."""

    def __init__(self, db: AsyncSession, chunk_size: Optional[int] = None):
        self.db = db
        self.chunk_size = chunk_size
        self._repositories: Dict[str, UpsertRepository] = {}

    def get(self, entity_type: str) -> UpsertRepository:
        if entity_type not in self._repositories:
            repository_class = REPOSITORIES.get(entity_type)
            if repository_class is None:
                raise UnknownEntityTypeError(entity_type)
            self._repositories[entity_type] = repository_class(self.db, chunk_size=self.chunk_size)
        return self._repositories[entity_type]

    async def list_id_pairs(self, entity_type: str, key: str = "ps_id") -> List[Tuple[int, Hashable]]:
        return await self.get(entity_type).list_id_pairs(key)

    async def insert_placeholders(self, entity_type: str, rows: List[Dict[str, Any]]) -> int:
        return await self.get(entity_type).insert_missing(rows)
