"""
Tests for the domain models.

These tests verify:
- Entity kind metadata (id/status fields, tables)
- Status classification into categories
- HistoryRecord serialization, merging and column projection
"""

import json

import pytest

from rpo_sync.models import (
    CATEGORIES_FIELD,
    Category,
    EntityKind,
    HistoryRecord,
    classify_status,
    project_fields,
    records_from_members,
)


# =============================================================================
# ENTITY KIND TESTS
# =============================================================================

class TestEntityKind:
    """Test per-kind naming."""

    def test_requisition_metadata(self):
        kind = EntityKind.REQUISITION
        assert kind.id_field == "requisicao"
        assert kind.status_field == "status"
        assert kind.history_table == "historico_vagas"
        assert kind.status_table == "status_vagas"
        assert kind.categorized is True

    def test_candidate_metadata(self):
        kind = EntityKind.CANDIDATE
        assert kind.id_field == "id_candidato"
        assert kind.status_field == "status_candidato"
        assert kind.history_table == "historico_candidatos"
        assert kind.categorized is False


# =============================================================================
# CLASSIFICATION TESTS
# =============================================================================

class TestClassifyStatus:
    """Test category resolution from funcao_sistema."""

    def test_literal_proposta_is_proposal_without_mapping(self):
        assert classify_status("PROPOSTA", None) == (Category.PROPOSAL,)

    def test_case_insensitive_substring_match(self):
        assert classify_status("EM SHORTLIST", "Envio para SHORTLIST") == (Category.SHORTLIST,)
        assert classify_status("X", "Vaga Cancelada") == (Category.CANCELLED,)
        assert classify_status("Y", "fechada") == (Category.CLOSED,)

    def test_multiple_categories(self):
        categories = classify_status("Z", "proposta / shortlist")
        assert set(categories) == {Category.PROPOSAL, Category.SHORTLIST}

    def test_no_category(self):
        assert classify_status("ABERTA", "Aberta") == ()
        assert classify_status(None, None) == ()


# =============================================================================
# HISTORY RECORD TESTS
# =============================================================================

def make_record(**fields) -> HistoryRecord:
    return HistoryRecord(
        tenant="RPO_T1",
        kind=EntityKind.REQUISITION,
        entity_id="REQ-1",
        cached_at=1_700_000_000_000_001,
        fields={"requisicao": "REQ-1", "status": "PROPOSTA", **fields},
        categories=(Category.PROPOSAL,),
    )


class TestHistoryRecord:
    """Test record serialization and transformations."""

    def test_to_json_is_deterministic(self):
        a = make_record(b=2, a=1)
        b = make_record(a=1, b=2)
        assert a.to_json() == b.to_json()

    def test_to_json_contains_reserved_fields(self):
        data = json.loads(make_record().to_json())
        assert data["cached_at"] == 1_700_000_000_000_001
        assert data[CATEGORIES_FIELD] == ["proposal"]

    def test_from_json_restores_record(self):
        record = make_record(observacao="ok")
        restored = HistoryRecord.from_json("RPO_T1", EntityKind.REQUISITION, "REQ-1", record.to_json())
        assert restored == record
        assert "cached_at" not in restored.fields

    def test_from_json_rejects_non_object(self):
        with pytest.raises(ValueError):
            HistoryRecord.from_json("RPO_T1", EntityKind.REQUISITION, "REQ-1", "[1, 2]")

    def test_merged_keeps_timestamp_and_sets_updated_at(self):
        record = make_record(observacao="old")
        patched = record.merged({"observacao": "new"}, updated_at="2024-01-01T00:00:00+00:00")

        assert patched.cached_at == record.cached_at
        assert patched.fields["observacao"] == "new"
        assert patched.fields["updated_at"] == "2024-01-01T00:00:00+00:00"
        assert record.fields["observacao"] == "old"

    def test_payload_flattens_cached_at(self):
        payload = make_record().payload()
        assert payload["cached_at"] == 1_700_000_000_000_001
        assert payload["requisicao"] == "REQ-1"


class TestProjection:
    """Test projection onto durable table columns."""

    def test_drops_unknown_fields(self):
        projected = project_fields({"requisicao": "R", "unknown": 1}, ["id", "requisicao", "status"])
        assert projected == {"requisicao": "R"}

    def test_never_writes_managed_columns(self):
        record = make_record(id=99, created_at="2020-01-01")
        projected = record.project(["id", "created_at", "requisicao", "status"])
        assert "id" not in projected
        assert "created_at" not in projected
        assert projected["status"] == "PROPOSTA"

    def test_drops_none_values(self):
        assert project_fields({"requisicao": "R", "status": None}, ["requisicao", "status"]) == {
            "requisicao": "R"
        }


class TestRecordsFromMembers:
    """Test tolerant decoding of sorted-set members."""

    def test_skips_corrupt_members(self):
        good = make_record().to_json()
        records = records_from_members(
            "RPO_T1", EntityKind.REQUISITION, "REQ-1",
            [good, "not json", '{"no_cached_at": true}'],
        )
        assert len(records) == 1
        assert records[0].cached_at == 1_700_000_000_000_001
