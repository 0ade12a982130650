"""
Sync definitions for every entity type mirrored from the SIS, and the order a
full sync runs them in.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from reportcard.integrations.sis import transformer as t
from reportcard.integrations.sis.credential_store import Credential
from reportcard.integrations.sis.errors import UnknownEntityTypeError
from reportcard.integrations.sis.reconciler import ReferenceSpec
from reportcard.repositories.sis_entities import RepositoryRegistry


@dataclass(frozen=True)
class EntitySyncDefinition:
    """Where an entity type comes from upstream and how its rows are resolved."""
    entity_type: str
    query: str
    table: str
    transform: Callable[[Dict[str, Any]], Dict[str, Any]]
    references: Tuple[ReferenceSpec, ...] = ()
    depends_on: Tuple[str, ...] = ()
    paginated: bool = True
    params: Optional[Callable[[Credential], Dict[str, Any]]] = None
    after_sync: Optional[Callable[[RepositoryRegistry, date], Awaitable[Any]]] = None


def _school_ref(required: bool = False, placeholder: bool = False) -> ReferenceSpec:
    return ReferenceSpec(
        "ps_school_id", "school_id", "schools", "School",
        required=required,
        placeholder=t.placeholder_school if placeholder else None
    )


def _terms_params(credential: Credential) -> Dict[str, Any]:
    if credential.school_id is None:
        return {}
    return {'schoolid': credential.school_id}


async def _refresh_current_term(registry: RepositoryRegistry, today: date):
    return await registry.get("terms").set_current_for(today)


STUDENT_REF = ReferenceSpec("ps_student_id", "student_id", "students", "Student")
PERSON_REF = ReferenceSpec("ps_person_id", "person_id", "persons", "Person")
SECTION_REF = ReferenceSpec("ps_section_id", "section_id", "sections", "Section", required=False)
TERM_REF = ReferenceSpec("ps_term_id", "term_id", "terms", "Term", required=False)


SYNC_DEFINITIONS: Dict[str, EntitySyncDefinition] = {
    d.entity_type: d for d in (
        EntitySyncDefinition(
            "schools", "schools", "schools", t.transform_school,
            paginated=False,
        ),
        EntitySyncDefinition(
            "terms", "terms", "terms", t.transform_term,
            references=(_school_ref(placeholder=True),),
            params=_terms_params,
            after_sync=_refresh_current_term,
        ),
        EntitySyncDefinition(
            "teachers", "teachers", "teachers", t.transform_teacher,
            references=(_school_ref(placeholder=True),),
        ),
        EntitySyncDefinition(
            "students", "students", "students", t.transform_student,
            references=(_school_ref(placeholder=True),),
        ),
        EntitySyncDefinition(
            "courses", "courses", "courses", t.transform_course,
        ),
        EntitySyncDefinition(
            "sections", "sections", "sections", t.transform_section,
            references=(
                ReferenceSpec("course_number", "course_id", "courses", "Course", key="course_number"),
                TERM_REF,
                ReferenceSpec("ps_teacher_id", "teacher_id", "teachers", "Teacher", required=False),
                _school_ref(),
            ),
            depends_on=("courses",),
        ),
        EntitySyncDefinition(
            "standards", "standards", "standards", t.transform_standard,
        ),
        EntitySyncDefinition(
            "attendance-codes", "attendance_code", "attendance_code", t.transform_attendance_code,
            references=(_school_ref(),),
        ),
        EntitySyncDefinition(
            "grades", "storedgrades", "storedgrades", t.transform_stored_grade,
            references=(STUDENT_REF, SECTION_REF, TERM_REF, _school_ref()),
            depends_on=("students",),
        ),
        EntitySyncDefinition(
            "attendance", "attendance", "attendance", t.transform_attendance,
            references=(
                STUDENT_REF,
                ReferenceSpec(
                    "ps_attendance_code_id", "attendance_code_id", "attendance-codes",
                    "Attendance code", required=False
                ),
                SECTION_REF,
                _school_ref(),
            ),
            depends_on=("students",),
        ),
        EntitySyncDefinition(
            "persons", "person", "person", t.transform_person,
        ),
        EntitySyncDefinition(
            "email-addresses", "emailaddress", "emailaddress", t.transform_email_address,
        ),
        EntitySyncDefinition(
            "phone-numbers", "phonenumber", "phonenumber", t.transform_phone_number,
        ),
        EntitySyncDefinition(
            "person-email-assocs", "person_email_assoc", "personemailaddressassoc",
            t.transform_person_email_assoc,
            references=(
                PERSON_REF,
                ReferenceSpec("ps_email_address_id", "email_address_id", "email-addresses", "Email"),
            ),
            depends_on=("persons", "email-addresses"),
        ),
        EntitySyncDefinition(
            "person-phone-assocs", "person_phone_assoc", "personphonenumberassoc",
            t.transform_person_phone_assoc,
            references=(
                PERSON_REF,
                ReferenceSpec("ps_phone_number_id", "phone_number_id", "phone-numbers", "Phone"),
            ),
            depends_on=("persons", "phone-numbers"),
        ),
        EntitySyncDefinition(
            "student-contacts", "student_contact_assoc", "studentcontactassoc",
            t.transform_student_contact,
            references=(
                ReferenceSpec("ps_student_dcid", "student_id", "students", "Student", key="ps_dcid"),
                PERSON_REF,
            ),
            depends_on=("students", "persons"),
        ),
    )
}

# Request aliases for a single entity type
SYNC_ALIASES: Dict[str, str] = {
    "years": "terms",
}

# Named subsets of the full sync, run in full-sync order without the lock
SYNC_GROUPS: Dict[str, Tuple[str, ...]] = {
    "contacts": (
        "persons",
        "email-addresses",
        "phone-numbers",
        "person-email-assocs",
        "person-phone-assocs",
        "student-contacts",
    ),
}

# Reference data, then students, then course structure, then measurements,
# then the contact graph
FULL_SYNC_ORDER: Tuple[str, ...] = (
    "schools",
    "terms",
    "teachers",
    "students",
    "courses",
    "sections",
    "standards",
    "attendance-codes",
    "grades",
    "attendance",
    "persons",
    "email-addresses",
    "phone-numbers",
    "person-email-assocs",
    "person-phone-assocs",
    "student-contacts",
)


def get_definition(entity_type: str) -> EntitySyncDefinition:
    definition = SYNC_DEFINITIONS.get(entity_type)
    if definition is None:
        raise UnknownEntityTypeError(entity_type)
    return definition
