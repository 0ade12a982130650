"""
Contact graph mirrored from the SIS: people, their email addresses and phone
numbers, and the association tables linking them to each other and to
students.
"""

from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Index

from reportcard.core.database import Base
from reportcard.models.sis_entities import SyncedEntityMixin


class Person(SyncedEntityMixin, Base):
    __tablename__ = "persons"

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    middle_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class EmailAddress(SyncedEntityMixin, Base):
    __tablename__ = "email_addresses"

    email_address = Column(String(255), nullable=True)


class PhoneNumber(SyncedEntityMixin, Base):
    __tablename__ = "phone_numbers"

    phone_number = Column(String(50), nullable=True)
    extension = Column(String(20), nullable=True)
    is_sms = Column(Boolean, default=False, nullable=False)


class PersonEmailAssoc(SyncedEntityMixin, Base):
    __tablename__ = "person_email_assocs"

    person_id = Column(Integer, ForeignKey("persons.id"), nullable=False)
    email_address_id = Column(Integer, ForeignKey("email_addresses.id"), nullable=False)
    email_type_code_set_id = Column(Integer, nullable=True)
    is_primary = Column(Boolean, default=False, nullable=False)
    priority_order = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_person_email_person", "person_id"),
    )


class PersonPhoneAssoc(SyncedEntityMixin, Base):
    __tablename__ = "person_phone_assocs"

    person_id = Column(Integer, ForeignKey("persons.id"), nullable=False)
    phone_number_id = Column(Integer, ForeignKey("phone_numbers.id"), nullable=False)
    phone_type_code_set_id = Column(Integer, nullable=True)
    is_preferred = Column(Boolean, default=False, nullable=False)
    priority_order = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_person_phone_person", "person_id"),
    )


class StudentContactAssoc(SyncedEntityMixin, Base):
    __tablename__ = "student_contact_assocs"

    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    person_id = Column(Integer, ForeignKey("persons.id"), nullable=False)
    contact_priority_order = Column(Integer, nullable=True)
    relationship_code_set_id = Column(Integer, nullable=True)

    __table_args__ = (
        Index("idx_student_contact_student", "student_id"),
    )
