"""
Tests for raw record transforms and value coercion.
"""

from datetime import date

import pytest

from reportcard.integrations.sis import transformer as t
from reportcard.integrations.sis.transformer import RecordSkipped


class TestCoercion:

    def test_to_str_strips_and_blanks_to_none(self):
        assert t.to_str("  Lin ") == "Lin"
        assert t.to_str("   ") is None
        assert t.to_str(None) is None
        assert t.to_str(42) == "42"

    def test_to_int(self):
        assert t.to_int("12") == 12
        assert t.to_int("12.0") == 12
        assert t.to_int("") is None
        assert t.to_int("n/a") is None

    def test_to_float(self):
        assert t.to_float("87.5") == 87.5
        assert t.to_float(None) is None

    def test_to_bool(self):
        assert t.to_bool("1") is True
        assert t.to_bool("true") is True
        assert t.to_bool("0") is False
        assert t.to_bool(None) is False
        assert t.to_bool("", default=True) is True

    def test_to_date_formats(self):
        assert t.to_date("2024-08-26") == date(2024, 8, 26)
        assert t.to_date("2024-08-26T00:00:00") == date(2024, 8, 26)
        assert t.to_date("08/26/2024") == date(2024, 8, 26)
        assert t.to_date("0000-00-00") is None
        assert t.to_date(None) is None


class TestTableFields:

    def test_returns_named_table(self):
        record = {"id": 1, "tables": {"students": {"id": "1"}}}
        assert t.table_fields(record, "students") == {"id": "1"}

    def test_table_name_is_case_insensitive(self):
        record = {"id": 1, "tables": {"STUDENTS": {"id": "1"}}}
        assert t.table_fields(record, "students") == {"id": "1"}

    def test_flat_record_is_used_as_is(self):
        assert t.table_fields({"id": "5"}, "students") == {"id": "5"}


class TestTransforms:

    def test_student(self):
        row = t.transform_student({
            "id": "1201", "dcid": "5201", "student_number": "20240017",
            "first_name": "Mei", "last_name": "Chen", "grade_level": "7",
            "enroll_status": "0", "entrydate": "2024-08-26", "schoolid": "100",
        })

        assert row["ps_id"] == 1201
        assert row["ps_dcid"] == 5201
        assert row["grade_level"] == 7
        assert row["entry_date"] == date(2024, 8, 26)
        assert row["ps_school_id"] == 100
        assert "chinese_name" not in row

    def test_missing_id_is_skipped(self):
        with pytest.raises(RecordSkipped, match="missing upstream id"):
            t.transform_student({"first_name": "Nobody"})

    def test_teacher_active_flag(self):
        assert t.transform_teacher({"id": "1", "staffstatus": "1"})["is_active"] is True
        assert t.transform_teacher({"id": "2", "staffstatus": "2"})["is_active"] is False

    def test_course_without_number_is_skipped(self):
        with pytest.raises(RecordSkipped) as exc_info:
            t.transform_course({"id": "9", "course_name": "Art"})
        assert exc_info.value.upstream_id == 9

    def test_empty_attendance_code_is_skipped(self):
        with pytest.raises(RecordSkipped, match="empty attendance code"):
            t.transform_attendance_code({"id": "3", "att_code": " "})

    def test_stored_grade_carries_upstream_references(self):
        row = t.transform_stored_grade({
            "id": "77", "studentid": "1201", "sectionid": "300", "termid": "3401",
            "schoolid": "100", "grade": "A-", "percent": "91.5", "storecode": "S1",
        })

        assert row["ps_student_id"] == 1201
        assert row["ps_section_id"] == 300
        assert row["ps_term_id"] == 3401
        assert row["percent"] == 91.5
        assert row["store_code"] == "S1"

    def test_contact_graph_rows_use_their_own_id_columns(self):
        assert t.transform_email_address({"emailaddressid": "11", "emailaddress": "a@b.c"})["ps_id"] == 11
        assert t.transform_phone_number({"phonenumberid": "12", "issms": "1"})["is_sms"] is True
        assoc = t.transform_student_contact({
            "studentcontactassocid": "13", "studentdcid": "5201", "personid": "40"
        })
        assert assoc == {
            "ps_id": 13,
            "ps_student_dcid": 5201,
            "ps_person_id": 40,
            "contact_priority_order": None,
            "relationship_code_set_id": None,
        }

    def test_person_defaults_to_active(self):
        assert t.transform_person({"id": "40"})["is_active"] is True

    def test_placeholder_school_names(self):
        assert t.placeholder_school(0) == {"ps_id": 0, "name": "District Office"}
        assert t.placeholder_school(200) == {"ps_id": 200, "name": "School 200"}
