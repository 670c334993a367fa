"""
Tests for the infrastructure layer.

Covers configuration, error handling, logging, repositories, the unit of
work and both rating stores.
"""

import json
import logging
import sys

import pydantic
import pytest

from orbit_assessment.application import api
from orbit_assessment.domain.models import AssessmentHistory, EvidenceResponse, QuestionResponse
from orbit_assessment.infrastructure.config import (
    DatabaseConfig,
    ImportConfig,
    get_settings,
    load_settings_from_file,
    reset_settings,
)
from orbit_assessment.infrastructure.exceptions import (
    AssessmentNotFoundError,
    BusinessLogicError,
    ConnectionError,
    DatabaseError,
    IntegrityError,
    create_user_friendly_error_message,
    handle_database_error,
    log_error_details,
)
from orbit_assessment.infrastructure.logging import (
    LogContext,
    StructuredFormatter,
    clear_context,
    context_filter,
    get_logger,
    set_context,
)
from orbit_assessment.infrastructure.memory_store import InMemoryRatingStore
from orbit_assessment.infrastructure.models import AssessmentHistoryORM, CapabilityAssessmentORM, TagORM
from orbit_assessment.infrastructure.repositories import HistoryRepo, TagRepo
from orbit_assessment.infrastructure.repositories_base import BaseRepository
from orbit_assessment.infrastructure.sql_store import (
    history_from_orm,
    history_to_orm,
    rating_from_orm,
    rating_to_orm,
    sql_transaction_factory,
)
from orbit_assessment.infrastructure.uow import UnitOfWork
from tests.helpers import T0, later, make_assessment, rate, rate_many


class TestConfiguration:
    """Test the pydantic-settings configuration sections."""

    def test_defaults(self):
        settings = get_settings()
        assert settings.database.backend == "sqlite"
        assert settings.imports.supported_versions == ["1.0"]
        assert settings.imports.max_workers == 1
        assert settings.app.enable_bundle_import is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("IMPORT_MAX_WORKERS", "4")
        monkeypatch.setenv("APP_ENABLE_DATA_EXPORT", "false")
        reset_settings()

        settings = get_settings()
        assert settings.imports.max_workers == 4
        assert settings.app.enable_data_export is False

    def test_export_version_must_be_readable(self):
        with pytest.raises(pydantic.ValidationError):
            ImportConfig(export_version="2.0")
        assert ImportConfig(supported_versions=["1.0", "2.0"], export_version="2.0")

    @pytest.mark.parametrize("workers", [0, 33])
    def test_worker_bounds(self, workers):
        with pytest.raises(pydantic.ValidationError):
            ImportConfig(max_workers=workers)

    def test_mysql_url(self):
        config = DatabaseConfig(
            backend="mysql", mysql_user="orbit", mysql_password="pw", mysql_database="orbit"
        )
        assert config.get_connection_url().startswith("mysql+pymysql://orbit:pw@localhost:3306/orbit")

    def test_sqlite_path_gets_suffix(self, tmp_path):
        config = DatabaseConfig(sqlite_path=str(tmp_path / "store"))
        assert config.get_connection_url().endswith("store.db")

    def test_load_settings_from_json(self, tmp_path, monkeypatch):
        # registered so monkeypatch restores the variable afterwards
        monkeypatch.setenv("IMPORT_MAX_WORKERS", "1")
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"imports": {"max_workers": 3}}), encoding="utf-8")

        settings = load_settings_from_file(str(path))
        assert settings.imports.max_workers == 3

    def test_load_settings_rejects_unknown_section(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"import": {"max_workers": 3}}), encoding="utf-8")

        with pytest.raises(ValueError, match="Unknown configuration section 'import'"):
            load_settings_from_file(str(path))

    def test_load_settings_errors(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings_from_file(str(tmp_path / "missing.json"))
        path = tmp_path / "settings.yaml"
        path.write_text("a: 1", encoding="utf-8")
        with pytest.raises(ValueError):
            load_settings_from_file(str(path))

    def test_environment_info(self):
        info = get_settings().get_environment_info()
        assert info["database_backend"] == "sqlite"
        assert info["features"] == {"data_export": True, "bundle_import": True}
        assert info["imports"]["supported_versions"] == ["1.0"]


class TestErrorHandling:
    """Test conversion and reporting of errors."""

    @pytest.mark.parametrize(
        "message,expected,constraint",
        [
            ("UNIQUE constraint failed: tags.name", IntegrityError, "unique"),
            ("FOREIGN KEY constraint failed", IntegrityError, "foreign_key"),
            ("CHECK constraint failed: ck_rating_current_level", IntegrityError, "check"),
            ("connection refused", ConnectionError, None),
        ],
    )
    def test_database_error_mapping(self, message, expected, constraint):
        error = handle_database_error(Exception(message), "save")
        assert isinstance(error, expected)
        if constraint:
            assert error.constraint == constraint

    def test_unrecognised_database_error(self):
        error = handle_database_error(Exception("disk I/O error"), "save rating")
        assert type(error) is DatabaseError
        assert error.operation == "save rating"

    def test_user_friendly_messages(self):
        assert "Invalid input" in create_user_friendly_error_message(ValueError("bad"))
        assert "unexpected" in create_user_friendly_error_message(RuntimeError("boom"))
        error = AssessmentNotFoundError("a-1")
        assert create_user_friendly_error_message(error) == error.user_message

    def test_log_error_details(self):
        details = log_error_details(AssessmentNotFoundError("a-1"), {"area_id": "claims-payment"})
        assert details["error_type"] == "AssessmentNotFoundError"
        assert details["context"] == {"area_id": "claims-payment"}
        assert "user_message" in details

        plain = log_error_details(KeyError("x"))
        assert plain["context"] == {}
        assert "user_message" not in plain


class TestLogging:
    """Test the structured logging helpers."""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_logger_namespace(self):
        assert get_logger("merge").name == "orbit_assessment.merge"
        assert get_logger("orbit_assessment.domain.merge").name == "orbit_assessment.domain.merge"

    def test_log_context_restores_previous_values(self):
        set_context(import_id="imp-1")
        with LogContext(area_id="claims-payment"):
            assert context_filter.context == {"import_id": "imp-1", "area_id": "claims-payment"}
        assert context_filter.context == {"import_id": "imp-1"}

    def test_structured_formatter(self):
        record = logging.LogRecord(
            "orbit_assessment.merge", logging.INFO, __file__, 10, "merged %s", ("x",), None
        )
        record.area_id = "claims-payment"
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["message"] == "merged x"
        assert payload["level"] == "INFO"
        assert payload["area_id"] == "claims-payment"

    def test_structured_formatter_with_exception(self):
        try:
            raise ValueError("bad level")
        except ValueError:
            record = logging.LogRecord(
                "orbit_assessment", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["exception"]["type"] == "ValueError"
        assert payload["exception"]["message"] == "bad level"


class TestRepositories:
    """Test repository behaviour against SQLite."""

    def test_model_is_required(self, session):
        class Bare(BaseRepository[TagORM]):
            pass

        with pytest.raises(ValueError, match="model must be set"):
            Bare(session)

    def test_tag_lookup_is_case_insensitive(self, session):
        repo = TagRepo(session)
        repo.create(TagORM(id="t1", name="Baseline", usage_count=2, last_used=T0))
        repo.create(TagORM(id="t2", name="Q1-review", usage_count=5, last_used=later(5)))

        assert repo.get_by_name("BASELINE").id == "t1"
        assert [t.id for t in repo.search("e")] == ["t2", "t1"]
        assert [t.id for t in repo.recent()] == ["t2", "t1"]

    def test_duplicate_tag_is_integrity_error(self, session):
        repo = TagRepo(session)
        repo.create(TagORM(id="t1", name="baseline", last_used=T0))
        with pytest.raises(IntegrityError):
            repo.create(TagORM(id="t2", name="baseline", last_used=T0))
        session.rollback()

    def test_history_newest_first(self, session):
        repo = HistoryRepo(session)
        for i, minutes in enumerate([0, 60, 30]):
            repo.create(
                AssessmentHistoryORM(
                    id=f"h{i}",
                    capability_assessment_id="a1",
                    capability_area_id="claims-payment",
                    snapshot_date=later(minutes),
                    fingerprint=f"fp{i}",
                )
            )
        assert [h.id for h in repo.list_for_area("claims-payment")] == ["h1", "h2", "h0"]
        assert repo.latest_for_assessment("a1").id == "h1"
        assert repo.latest_for_assessment("a2") is None


class TestUnitOfWork:
    def test_commit_on_success(self, SessionLocal):
        with UnitOfWork(SessionLocal).begin() as s:
            TagRepo(s).create(TagORM(id="t1", name="kept", last_used=T0))
        with SessionLocal() as s:
            assert TagRepo(s).get_by_name("kept") is not None

    def test_rollback_on_error(self, SessionLocal):
        with pytest.raises(RuntimeError):
            with UnitOfWork(SessionLocal).begin() as s:
                TagRepo(s).create(TagORM(id="t1", name="lost", last_used=T0))
                raise RuntimeError("abort")
        with SessionLocal() as s:
            assert TagRepo(s).get_by_name("lost") is None


class TestStores:
    """Test the in-memory and SQL rating stores."""

    def test_memory_transaction_rolls_back(self):
        store = InMemoryRatingStore()
        a = make_assessment(assessment_id="a1")
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.put_assessment(a, rate_many("a1", {"capability": 3}))
                raise RuntimeError("abort")
        assert store.get_assessment("provider-enrollment") is None
        assert store.row_counts()["ratings"] == 0

    def test_memory_rejects_duplicate_ids(self):
        store = InMemoryRatingStore()
        a = make_assessment(assessment_id="a1")
        store.put_assessment(a, [])
        with pytest.raises(ValueError):
            store.put_assessment(a, [])

    def test_memory_demote(self):
        a = make_assessment(assessment_id="a1")
        store = InMemoryRatingStore.from_snapshot([a], {})
        store.demote_assessment("a1")
        assert store.get_assessment("provider-enrollment") is None
        assert "a1" in store.assessments

    def test_memory_demote_refuses_changed_resident(self):
        a = make_assessment(assessment_id="a1", updated_at=later(5))
        store = InMemoryRatingStore.from_snapshot([a], {})
        with pytest.raises(BusinessLogicError):
            store.demote_assessment("a1", expected_updated_at=T0)
        store.demote_assessment("a1", expected_updated_at=later(5))
        with pytest.raises(BusinessLogicError):
            store.demote_assessment("a1")

    def test_memory_keeps_one_current_per_area(self):
        store = InMemoryRatingStore.from_snapshot([make_assessment(assessment_id="a1")], {})
        with pytest.raises(ValueError, match="already has a current assessment"):
            store.put_assessment(make_assessment(assessment_id="a2"), [])

    def test_sql_store_through_transaction_factory(self, SessionLocal):
        transaction = sql_transaction_factory(SessionLocal)
        a = make_assessment(assessment_id="a1")
        with transaction() as store:
            store.put_assessment(a, rate_many("a1", {"capability": 3, "data-quality": 2}))

        with transaction() as store:
            current = store.get_assessment("provider-enrollment")
            assert current.id == "a1"
            assert len(store.get_ratings("a1")) == 2
            store.demote_assessment("a1")

        with transaction() as store:
            assert store.get_assessment("provider-enrollment") is None

    def test_rating_mapper_round_trip(self):
        rating = rate(
            "a1",
            "data-quality",
            3,
            target=4,
            notes="gaps",
            question_responses=(QuestionResponse(0, True), QuestionResponse(1, None)),
            evidence_responses=(EvidenceResponse(0, True, "audit"),),
            attachment_ids=("att-1",),
        )
        assert rating_from_orm(rating_to_orm(rating)) == rating

    def test_history_mapper_round_trip(self):
        ratings = rate_many("a1", {"capability": 3})
        entry = AssessmentHistory(
            id="h1",
            capability_assessment_id="a1",
            capability_area_id="provider-enrollment",
            snapshot_date=T0,
            overall_score=3.0,
            tags=("baseline",),
            dimension_scores={"outcomes": 3.0},
            ratings=tuple(r.to_historical() for r in ratings),
        )
        restored = history_from_orm(history_to_orm(entry))
        assert restored.ratings == entry.ratings
        assert restored.dimension_scores == {"outcomes": 3.0}
        assert restored.tags == ("baseline",)
        assert restored.fingerprint


class TestConcurrentWriters:
    """Two sessions interleaving writes to the same capability area."""

    def current_rows(self, SessionLocal, area_id="provider-enrollment"):
        with SessionLocal() as s:
            return (
                s.query(CapabilityAssessmentORM)
                .filter_by(capability_area_id=area_id, is_current=True)
                .all()
            )

    def test_import_cannot_add_second_current_after_local_start(self, SessionLocal):
        transaction = sql_transaction_factory(SessionLocal)
        remote = make_assessment(assessment_id="remote-1")

        with pytest.raises(IntegrityError):
            with transaction() as store:
                assert store.get_assessment("provider-enrollment") is None
                with SessionLocal() as other:
                    local = api.start_assessment(other, "provider-enrollment")
                    other.commit()
                store.put_assessment(remote, [])

        assert [row.id for row in self.current_rows(SessionLocal)] == [local.id]

    def test_start_losing_race_to_import_is_rejected(self, SessionLocal, monkeypatch):
        with SessionLocal() as s:
            # the import commits between the current-assessment check and the insert
            monkeypatch.setattr(api.AssessmentRepo, "get_current", lambda self, area_id: None)
            with sql_transaction_factory(SessionLocal)() as store:
                store.put_assessment(make_assessment(assessment_id="remote-1"), [])
            with pytest.raises(BusinessLogicError, match="already has a current assessment"):
                api.start_assessment(s, "provider-enrollment")
            s.rollback()

        assert [row.id for row in self.current_rows(SessionLocal)] == ["remote-1"]

    def test_demote_refuses_resident_edited_since_read(self, SessionLocal):
        with SessionLocal() as s:
            local = api.start_assessment(s, "provider-enrollment")
            s.commit()

        with pytest.raises(BusinessLogicError, match="changed since it was read"):
            with sql_transaction_factory(SessionLocal)() as store:
                resident = store.get_assessment("provider-enrollment")
                with SessionLocal() as other:
                    api.record_rating(other, local.id, "capability", 4)
                    other.commit()
                store.demote_assessment(resident.id, expected_updated_at=resident.updated_at)

        assert [row.id for row in self.current_rows(SessionLocal)] == [local.id]

    def test_rating_refused_once_import_demoted_the_assessment(self, SessionLocal):
        with SessionLocal() as s:
            local = api.start_assessment(s, "provider-enrollment")
            s.commit()

        with SessionLocal() as s:
            # loaded while still current
            assert api.get_assessment(s, local.id).id == local.id
            with sql_transaction_factory(SessionLocal)() as store:
                store.demote_assessment(local.id)

            with pytest.raises(BusinessLogicError, match="superseded"):
                api.record_rating(s, local.id, "capability", 4)
            s.rollback()

        with SessionLocal() as s:
            assert api.get_ratings(s, local.id) == []
