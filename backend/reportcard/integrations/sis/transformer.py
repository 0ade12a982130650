"""
Transforms raw named-query records into rows for the local tables.

Upstream records arrive as ``{"id": ..., "tables": {"<table>": {...}}}`` with
every value serialized as a string. The transforms coerce values, emit the
upstream identity (``ps_id`` / ``ps_dcid``) and carry foreign references as raw
upstream identifiers for the reconciler to translate.
"""

from datetime import date, datetime
from typing import Any, Dict, Optional


class RecordSkipped(Exception):
    """Raised by a transform when a record must not be persisted."""

    def __init__(self, reason: str, upstream_id: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.upstream_id = upstream_id


TRUE_VALUES = {"1", "true", "t", "yes", "y"}
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y")


def to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def to_int(value: Any) -> Optional[int]:
    value = to_str(value)
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def to_float(value: Any) -> Optional[float]:
    value = to_str(value)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def to_bool(value: Any, default: bool = False) -> bool:
    value = to_str(value)
    if value is None:
        return default
    return value.lower() in TRUE_VALUES


def to_date(value: Any) -> Optional[date]:
    value = to_str(value)
    if value is None:
        return None
    # Timestamps come through as "2024-08-26T00:00:00" or "2024-08-26 00:00:00"
    value = value.replace("T", " ").split(" ")[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def table_fields(record: Dict[str, Any], table: str) -> Dict[str, Any]:
    """Return the column map for ``table`` inside a raw record."""
    tables = record.get("tables")
    if isinstance(tables, dict):
        fields = tables.get(table)
        if fields is None:
            # Some PowerQueries report the table under a different case
            fields = next((v for k, v in tables.items() if k.lower() == table.lower()), None)
        return fields or {}
    return record


def require_id(fields: Dict[str, Any], key: str = "id") -> int:
    upstream_id = to_int(fields.get(key))
    if upstream_id is None:
        raise RecordSkipped("missing upstream id")
    return upstream_id


def placeholder_school(ps_school_id: int) -> Dict[str, Any]:
    name = "District Office" if ps_school_id == 0 else f"School {ps_school_id}"
    return {"ps_id": ps_school_id, "name": name}


def transform_school(f: Dict[str, Any]) -> Dict[str, Any]:
    ps_id = require_id(f)
    return {
        "ps_id": ps_id,
        "ps_dcid": to_int(f.get("dcid")),
        "name": to_str(f.get("name")) or f"School {ps_id}",
        "abbreviation": to_str(f.get("abbreviation")),
        "school_number": to_int(f.get("school_number")),
    }


def transform_term(f: Dict[str, Any]) -> Dict[str, Any]:
    ps_id = require_id(f)
    return {
        "ps_id": ps_id,
        "ps_dcid": to_int(f.get("dcid")),
        "name": to_str(f.get("name")) or f"Term {ps_id}",
        "abbreviation": to_str(f.get("abbreviation")),
        "first_day": to_date(f.get("firstday")),
        "last_day": to_date(f.get("lastday")),
        "year_id": to_int(f.get("yearid")),
        "is_year_rec": to_bool(f.get("isyearrec")),
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_teacher(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "first_name": to_str(f.get("first_name")),
        "last_name": to_str(f.get("last_name")),
        "last_first": to_str(f.get("lastfirst")),
        "email": to_str(f.get("email_addr")),
        "is_active": to_str(f.get("staffstatus")) == "1",
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_student(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "student_number": to_str(f.get("student_number")),
        "first_name": to_str(f.get("first_name")),
        "last_name": to_str(f.get("last_name")),
        "middle_name": to_str(f.get("middle_name")),
        "gender": to_str(f.get("gender")),
        "grade_level": to_int(f.get("grade_level")),
        "home_room": to_str(f.get("home_room")),
        "enroll_status": to_int(f.get("enroll_status")),
        "entry_date": to_date(f.get("entrydate")),
        "exit_date": to_date(f.get("exitdate")),
        "dob": to_date(f.get("dob")),
        "family_ident": to_int(f.get("family_ident")),
        "street": to_str(f.get("street")),
        "city": to_str(f.get("city")),
        "home_phone": to_str(f.get("home_phone")),
        "guardian_email": to_str(f.get("guardianemail")),
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_course(f: Dict[str, Any]) -> Dict[str, Any]:
    ps_id = require_id(f)
    course_number = to_str(f.get("course_number"))
    if course_number is None:
        raise RecordSkipped("missing course number", ps_id)
    return {
        "ps_id": ps_id,
        "ps_dcid": to_int(f.get("dcid")),
        "course_number": course_number,
        "course_name": to_str(f.get("course_name")),
        "credit_hours": to_float(f.get("credit_hours")),
    }


def transform_section(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "course_number": to_str(f.get("course_number")),
        "section_number": to_str(f.get("section_number")),
        "expression": to_str(f.get("expression")),
        "ps_term_id": to_int(f.get("termid")),
        "ps_teacher_id": to_int(f.get("teacher")),
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_standard(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "identifier": to_str(f.get("identifier")),
        "name": to_str(f.get("name")),
        "description": to_str(f.get("description")),
        "subject_area": to_str(f.get("subjectarea")),
    }


def transform_attendance_code(f: Dict[str, Any]) -> Dict[str, Any]:
    ps_id = require_id(f)
    att_code = to_str(f.get("att_code"))
    if att_code is None:
        raise RecordSkipped("empty attendance code", ps_id)
    return {
        "ps_id": ps_id,
        "ps_dcid": to_int(f.get("dcid")),
        "att_code": att_code,
        "description": to_str(f.get("description")),
        "presence_status": to_str(f.get("presence_status_cd")),
        "year_id": to_int(f.get("yearid")),
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_stored_grade(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "course_number": to_str(f.get("course_number")),
        "grade": to_str(f.get("grade")),
        "percent": to_float(f.get("percent")),
        "gpa_points": to_float(f.get("gpa_points")),
        "store_code": to_str(f.get("storecode")),
        "comment": to_str(f.get("comment_value")),
        "ps_student_id": to_int(f.get("studentid")),
        "ps_section_id": to_int(f.get("sectionid")),
        "ps_term_id": to_int(f.get("termid")),
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_attendance(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "att_date": to_date(f.get("att_date")),
        "period_id": to_int(f.get("periodid")),
        "year_id": to_int(f.get("yearid")),
        "att_mode_code": to_str(f.get("att_mode_code")),
        "ps_student_id": to_int(f.get("studentid")),
        "ps_attendance_code_id": to_int(f.get("attendance_codeid")),
        "ps_section_id": to_int(f.get("sectionid")),
        "ps_school_id": to_int(f.get("schoolid")),
    }


def transform_person(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f),
        "ps_dcid": to_int(f.get("dcid")),
        "first_name": to_str(f.get("firstname")),
        "last_name": to_str(f.get("lastname")),
        "middle_name": to_str(f.get("middlename")),
        "is_active": to_bool(f.get("isactive"), default=True),
    }


def transform_email_address(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f, "emailaddressid"),
        "email_address": to_str(f.get("emailaddress")),
    }


def transform_phone_number(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f, "phonenumberid"),
        "phone_number": to_str(f.get("phonenumber")),
        "extension": to_str(f.get("phonenumberext")),
        "is_sms": to_bool(f.get("issms")),
    }


def transform_person_email_assoc(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f, "personemailaddressassocid"),
        "ps_person_id": to_int(f.get("personid")),
        "ps_email_address_id": to_int(f.get("emailaddressid")),
        "email_type_code_set_id": to_int(f.get("emailtypecodesetid")),
        "is_primary": to_bool(f.get("isprimaryemailaddress")),
        "priority_order": to_int(f.get("emailaddresspriorityorder")),
    }


def transform_person_phone_assoc(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f, "personphonenumberassocid"),
        "ps_person_id": to_int(f.get("personid")),
        "ps_phone_number_id": to_int(f.get("phonenumberid")),
        "phone_type_code_set_id": to_int(f.get("phonetypecodesetid")),
        "is_preferred": to_bool(f.get("ispreferred")),
        "priority_order": to_int(f.get("phonenumberpriorityorder")),
    }


def transform_student_contact(f: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ps_id": require_id(f, "studentcontactassocid"),
        "ps_student_dcid": to_int(f.get("studentdcid")),
        "ps_person_id": to_int(f.get("personid")),
        "contact_priority_order": to_int(f.get("contactpriorityorder")),
        "relationship_code_set_id": to_int(f.get("currreltypecodesetid")),
    }
