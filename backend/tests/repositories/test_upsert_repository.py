"""
Tests for idempotent upserts keyed by upstream identifier.
"""

from datetime import date

import pytest
from sqlalchemy import select

from reportcard.integrations.sis.errors import PersistenceError, UnknownEntityTypeError
from reportcard.models import School, Student, Term
from reportcard.repositories.sis_entities import (
    RepositoryRegistry, SchoolRepository, StudentRepository, TermRepository
)


def student_row(ps_id, **overrides):
    row = {
        "ps_id": ps_id,
        "ps_dcid": 5000 + ps_id,
        "student_number": f"S{ps_id}",
        "first_name": "Mei",
        "last_name": "Chen",
        "grade_level": 7,
    }
    row.update(overrides)
    return row


class TestUpsert:

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, db):
        repository = StudentRepository(db)
        rows = [student_row(1), student_row(2)]

        await repository.bulk_upsert(rows)
        first = {s.ps_id: s.id for s in (await db.execute(select(Student))).scalars()}
        await repository.bulk_upsert(rows)
        second = {s.ps_id: s.id for s in (await db.execute(select(Student))).scalars()}

        assert await repository.count() == 2
        assert first == second

    @pytest.mark.asyncio
    async def test_update_changes_upstream_fields(self, db):
        repository = StudentRepository(db)
        await repository.upsert(student_row(1))

        student = await repository.upsert(student_row(1, grade_level=8, first_name="May"))

        assert student.grade_level == 8
        assert student.first_name == "May"

    @pytest.mark.asyncio
    async def test_blank_upstream_value_clears_field(self, db):
        repository = StudentRepository(db)
        await repository.upsert(student_row(1, home_room="7B"))

        student = await repository.upsert(student_row(1, home_room=None))

        assert student.home_room is None

    @pytest.mark.asyncio
    async def test_local_fields_survive_resync(self, db):
        repository = StudentRepository(db)
        student = await repository.upsert(student_row(1))
        await repository.update_local_fields(student.id, chinese_name="陈美")
        await repository.mark_pdf_generated(student.id)

        # Even a row carrying a local field must not overwrite it
        await repository.bulk_upsert([student_row(1, grade_level=8, chinese_name="overwritten")])
        reloaded = (await repository.upsert_many([student_row(1, grade_level=8)]))[0]

        assert reloaded.grade_level == 8
        assert reloaded.chinese_name == "陈美"
        assert reloaded.pdf_generated is True
        assert reloaded.pdf_generated_at is not None

    @pytest.mark.asyncio
    async def test_updated_at_moves_only_when_upstream_fields_change(self, db):
        repository = SchoolRepository(db)
        await repository.upsert({"ps_id": 100, "name": "Lincoln Middle", "abbreviation": "LMS"})

        unchanged = await repository.upsert({"ps_id": 100, "name": "Lincoln Middle", "abbreviation": "LMS"})
        assert unchanged.updated_at is None

        renamed = await repository.upsert({"ps_id": 100, "name": "Lincoln Middle School", "abbreviation": "LMS"})
        assert renamed.name == "Lincoln Middle School"
        assert renamed.updated_at is not None

    @pytest.mark.asyncio
    async def test_clearing_a_value_counts_as_a_change(self, db):
        repository = SchoolRepository(db)
        await repository.upsert({"ps_id": 100, "name": "Lincoln Middle", "abbreviation": "LMS"})

        school = await repository.upsert({"ps_id": 100, "name": "Lincoln Middle", "abbreviation": None})

        assert school.abbreviation is None
        assert school.updated_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_ids_collapse_to_last(self, db):
        repository = StudentRepository(db)

        written = await repository.bulk_upsert([
            student_row(1, first_name="First"),
            student_row(1, first_name="Last"),
        ])

        assert written == 1
        assert (await repository.find_by_upstream_id(1)).first_name == "Last"

    @pytest.mark.asyncio
    async def test_chunked_write(self, db):
        repository = StudentRepository(db, chunk_size=3)

        written = await repository.bulk_upsert([student_row(i) for i in range(1, 11)])

        assert written == 10
        assert await repository.count() == 10

    @pytest.mark.asyncio
    async def test_row_without_upstream_id_is_rejected(self, db):
        with pytest.raises(PersistenceError):
            await StudentRepository(db).bulk_upsert([{"first_name": "Nobody"}])

    @pytest.mark.asyncio
    async def test_constraint_violation_is_persistence_error(self, db):
        # name is NOT NULL
        with pytest.raises(PersistenceError):
            await SchoolRepository(db).bulk_upsert([{"ps_id": 1, "name": None}])

    @pytest.mark.asyncio
    async def test_insert_missing_leaves_existing_rows(self, db):
        repository = SchoolRepository(db)
        await repository.upsert({"ps_id": 100, "name": "Lincoln Middle"})

        await repository.insert_missing([{"ps_id": 100, "name": "School 100"}, {"ps_id": 0, "name": "District Office"}])

        names = {s.ps_id: s.name for s in (await db.execute(select(School))).scalars()}
        assert names == {100: "Lincoln Middle", 0: "District Office"}

    @pytest.mark.asyncio
    async def test_list_id_pairs(self, db):
        repository = StudentRepository(db)
        students = await repository.upsert_many([student_row(1), student_row(2)])

        pairs = await repository.list_id_pairs()
        dcid_pairs = await repository.list_id_pairs("ps_dcid")

        assert sorted(pairs) == sorted((s.id, s.ps_id) for s in students)
        assert sorted(dcid_pairs) == sorted((s.id, s.ps_dcid) for s in students)

    @pytest.mark.asyncio
    async def test_update_local_fields_rejects_upstream_fields(self, db):
        repository = StudentRepository(db)
        student = await repository.upsert(student_row(1))

        with pytest.raises(ValueError):
            await repository.update_local_fields(student.id, first_name="Changed")

    def test_upstream_fields_exclude_local_and_system_columns(self):
        fields = StudentRepository(None).upstream_fields

        assert "ps_id" in fields
        assert "chinese_name" not in fields
        assert "pdf_generated" not in fields
        assert "id" not in fields
        assert "created_at" not in fields


class TestCurrentTerm:

    @staticmethod
    def term(ps_id, first_day, last_day, is_year_rec=False):
        return Term(
            ps_id=ps_id, name=f"Term {ps_id}",
            first_day=first_day, last_day=last_day, is_year_rec=is_year_rec
        )

    def test_prefers_year_record_covering_today(self):
        year = self.term(1, date(2024, 8, 1), date(2025, 6, 30), is_year_rec=True)
        semester = self.term(2, date(2024, 8, 26), date(2025, 1, 17))

        assert TermRepository.pick_current([semester, year], date(2024, 9, 2)) is year

    def test_latest_covering_term_without_year_record(self):
        summer = self.term(1, date(2024, 6, 1), date(2024, 9, 30))
        fall = self.term(2, date(2024, 8, 26), date(2025, 1, 17))

        assert TermRepository.pick_current([summer, fall], date(2024, 9, 2)) is fall

    def test_falls_back_to_latest_start(self):
        old = self.term(1, date(2022, 8, 1), date(2023, 6, 30))
        newer = self.term(2, date(2023, 8, 1), date(2024, 6, 30))

        assert TermRepository.pick_current([old, newer], date(2024, 9, 2)) is newer
        assert TermRepository.pick_current([], date(2024, 9, 2)) is None

    @pytest.mark.asyncio
    async def test_set_current_for_flags_one_term(self, db):
        repository = TermRepository(db)
        await repository.bulk_upsert([
            {"ps_id": 3400, "name": "2023-2024", "first_day": date(2023, 8, 1),
             "last_day": date(2024, 6, 30), "is_year_rec": True},
            {"ps_id": 3401, "name": "2024-2025", "first_day": date(2024, 8, 1),
             "last_day": date(2025, 6, 30), "is_year_rec": True},
        ])

        current = await repository.set_current_for(date(2024, 9, 2))
        # Resync must not reset the flag
        await repository.bulk_upsert([{"ps_id": 3401, "name": "2024-2025 (renamed)"}])

        assert current.ps_id == 3401
        assert (await repository.get_current()).ps_id == 3401
        flagged = (await db.execute(select(Term).where(Term.is_current.is_(True)))).scalars().all()
        assert len(flagged) == 1


class TestRepositoryRegistry:

    def test_unknown_entity_type(self):
        with pytest.raises(UnknownEntityTypeError):
            RepositoryRegistry(None).get("report-cards")

    def test_repositories_are_reused(self):
        registry = RepositoryRegistry(None)
        assert registry.get("students") is registry.get("students")
