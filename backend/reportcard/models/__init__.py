from .sis_credential import SISCredential, CREDENTIAL_ROW_ID
from .sync_run import SyncRun, SyncRunStatus, SyncLock, FULL_SYNC
from .sis_entities import (
    SyncedEntityMixin, School, Term, Teacher, Student, Course, Section,
    Standard, AttendanceCode, StoredGrade, Attendance
)
from .contacts import (
    Person, EmailAddress, PhoneNumber, PersonEmailAssoc, PersonPhoneAssoc,
    StudentContactAssoc
)

__all__ = [
    "SISCredential",
    "CREDENTIAL_ROW_ID",
    "SyncRun",
    "SyncRunStatus",
    "SyncLock",
    "FULL_SYNC",
    "SyncedEntityMixin",
    "School",
    "Term",
    "Teacher",
    "Student",
    "Course",
    "Section",
    "Standard",
    "AttendanceCode",
    "StoredGrade",
    "Attendance",
    "Person",
    "EmailAddress",
    "PhoneNumber",
    "PersonEmailAssoc",
    "PersonPhoneAssoc",
    "StudentContactAssoc",
]
