"""
SQLAlchemy models for school data mirrored from the SIS.

Every synced table carries the upstream primary identifier (``ps_id``) as a
unique upsert key and, where the upstream exposes one, the secondary
identifier (``ps_dcid``). Columns listed in ``LOCAL_FIELDS`` are owned by the
portal and are never written by a sync.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Float, Text, ForeignKey, Index
)
from sqlalchemy.sql import func, false

from reportcard.core.database import Base


class SyncedEntityMixin:
    """Upstream identity and audit columns shared by every synced table."""

    LOCAL_FIELDS = ()

    id = Column(Integer, primary_key=True, index=True)
    ps_id = Column(Integer, nullable=False, unique=True, index=True)
    ps_dcid = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class School(SyncedEntityMixin, Base):
    __tablename__ = "schools"

    name = Column(String(255), nullable=False)
    abbreviation = Column(String(50), nullable=True)
    school_number = Column(Integer, nullable=True)


class Term(SyncedEntityMixin, Base):
    __tablename__ = "terms"

    LOCAL_FIELDS = ("is_current",)

    name = Column(String(255), nullable=False)
    abbreviation = Column(String(50), nullable=True)
    first_day = Column(Date, nullable=True)
    last_day = Column(Date, nullable=True)
    year_id = Column(Integer, nullable=True, index=True)
    is_year_rec = Column(Boolean, default=False, nullable=False)
    ps_school_id = Column(Integer, nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)

    # Computed locally after every terms sync
    is_current = Column(Boolean, default=False, server_default=false(), nullable=False)


class Teacher(SyncedEntityMixin, Base):
    __tablename__ = "teachers"

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    last_first = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    ps_school_id = Column(Integer, nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)


class Student(SyncedEntityMixin, Base):
    __tablename__ = "students"

    LOCAL_FIELDS = ("chinese_name", "pdf_generated", "pdf_generated_at")

    student_number = Column(String(50), nullable=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    middle_name = Column(String(100), nullable=True)
    gender = Column(String(10), nullable=True)
    grade_level = Column(Integer, nullable=True)
    home_room = Column(String(50), nullable=True)
    enroll_status = Column(Integer, nullable=True)
    entry_date = Column(Date, nullable=True)
    exit_date = Column(Date, nullable=True)
    dob = Column(Date, nullable=True)
    family_ident = Column(Integer, nullable=True)
    street = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    home_phone = Column(String(50), nullable=True)
    guardian_email = Column(String(255), nullable=True)
    ps_school_id = Column(Integer, nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)

    # Portal-owned
    chinese_name = Column(String(100), nullable=True)
    pdf_generated = Column(Boolean, default=False, server_default=false(), nullable=False)
    pdf_generated_at = Column(DateTime, nullable=True)


class Course(SyncedEntityMixin, Base):
    __tablename__ = "courses"

    course_number = Column(String(50), nullable=False, index=True)
    course_name = Column(String(255), nullable=True)
    credit_hours = Column(Float, nullable=True)


class Section(SyncedEntityMixin, Base):
    __tablename__ = "sections"

    course_number = Column(String(50), nullable=True)
    section_number = Column(String(50), nullable=True)
    expression = Column(String(100), nullable=True)
    ps_term_id = Column(Integer, nullable=True)
    ps_teacher_id = Column(Integer, nullable=True)
    ps_school_id = Column(Integer, nullable=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    term_id = Column(Integer, ForeignKey("terms.id"), nullable=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)


class Standard(SyncedEntityMixin, Base):
    __tablename__ = "standards"

    identifier = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    subject_area = Column(String(100), nullable=True)


class AttendanceCode(SyncedEntityMixin, Base):
    __tablename__ = "attendance_codes"

    att_code = Column(String(20), nullable=False)
    description = Column(String(255), nullable=True)
    presence_status = Column(String(20), nullable=True)
    year_id = Column(Integer, nullable=True)
    ps_school_id = Column(Integer, nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)


class StoredGrade(SyncedEntityMixin, Base):
    __tablename__ = "stored_grades"

    course_number = Column(String(50), nullable=True)
    grade = Column(String(20), nullable=True)
    percent = Column(Float, nullable=True)
    gpa_points = Column(Float, nullable=True)
    store_code = Column(String(20), nullable=True)
    comment = Column(Text, nullable=True)
    ps_section_id = Column(Integer, nullable=True)
    ps_term_id = Column(Integer, nullable=True)
    ps_school_id = Column(Integer, nullable=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    section_id = Column(Integer, ForeignKey("sections.id"), nullable=True)
    term_id = Column(Integer, ForeignKey("terms.id"), nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)

    __table_args__ = (
        Index("idx_stored_grades_student_term", "student_id", "term_id"),
    )


class Attendance(SyncedEntityMixin, Base):
    __tablename__ = "attendance"

    att_date = Column(Date, nullable=True)
    period_id = Column(Integer, nullable=True)
    year_id = Column(Integer, nullable=True)
    att_mode_code = Column(String(50), nullable=True)
    ps_attendance_code_id = Column(Integer, nullable=True)
    ps_section_id = Column(Integer, nullable=True)
    ps_school_id = Column(Integer, nullable=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    attendance_code_id = Column(Integer, ForeignKey("attendance_codes.id"), nullable=True)
    section_id = Column(Integer, ForeignKey("sections.id"), nullable=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=True)

    __table_args__ = (
        Index("idx_attendance_student_date", "student_id", "att_date"),
    )
