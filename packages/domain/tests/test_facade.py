"""Tests for the query facade and exports.

Tests cover:
- Open Cap Table document contents
- Exporter registration and tabular export bundles
- Delegation to aggregator, resolver, snapshots and audit log
"""

import pytest
from decimal import Decimal

from captable_engine import EngineCFG, build_engine
from captable_engine.errors import UnsupportedExportFormat
from captable_engine.export import ExportBundle


# =============================================================================
# OCT export
# =============================================================================

class TestOctExport:

    def test_document_shape(self, founded, clock):
        document = founded.facade.export("acme", "oct")

        assert document["ocfVersion"] == "1.0.0"
        assert document["generatedAt"] == clock.now.isoformat()
        assert document["issuer"] == {"id": "acme"}
        assert document["stockClasses"] == [{
            "id": "on",
            "name": "Ordinary",
            "classType": "COMMON",
            "authorizedShares": "10000000",
            "issuedShares": "1000000",
            "votesPerShare": 1,
            "liquidationPreferenceMultiple": None,
            "participatingPreferred": False,
            "seniority": None,
        }]

    def test_issuances_are_current_holdings(self, founded):
        document = founded.facade.export("acme", "OCT")

        issuances = {i["id"]: i for i in document["stockIssuances"]}
        assert set(issuances) == {"alice:on", "bob:on"}
        assert issuances["alice:on"]["quantity"] == "600000"
        assert issuances["alice:on"]["stockClassName"] == "Ordinary"

    def test_inactive_holders_are_left_out(self, founded):
        founded.registry.set_shareholder_status("acme", "carol", "INACTIVE")

        document = founded.facade.export("acme", "oct")

        assert [s["id"] for s in document["stockholders"]] == ["alice", "angel", "bob"]
        assert document["stockholders"][1] == {
            "id": "angel",
            "name": "Angel Fund",
            "stakeholderType": "INVESTOR",
        }

    def test_issuer_details_are_merged(self, founded):
        document = founded.facade.export("acme", "oct", issuer={"legalName": "Acme Ltda", "country": "BR"})
        assert document["issuer"] == {"id": "acme", "legalName": "Acme Ltda", "country": "BR"}


# =============================================================================
# Tabular export
# =============================================================================

class TestTabularExport:

    def test_unknown_format(self, founded):
        with pytest.raises(UnsupportedExportFormat, match="No exporter for format 'csv'"):
            founded.facade.export("acme", "csv")

    def test_only_tabular_formats_register(self, founded):
        with pytest.raises(UnsupportedExportFormat):
            founded.facade.register_exporter("json", lambda bundle: bundle)

    def test_exporter_receives_bundle(self, founded, clock):
        received = []

        def write_csv(bundle):
            received.append(bundle)
            return bundle.ownership.to_csv(index=False)

        founded.facade.register_exporter("CSV", write_csv)
        output = founded.facade.export("acme", "csv")

        bundle = received[0]
        assert isinstance(bundle, ExportBundle)
        assert bundle.company_id == "acme"
        assert bundle.generated_at == clock.now
        assert set(bundle.frames) == {
            "ownership", "ownership_by_class", "fully_diluted", "conversions", "summary",
        }
        assert bundle.summary.iloc[0]["total_shares"] == Decimal("1000000")
        assert output.splitlines()[0].startswith("shareholder_id,shareholder_name")

    def test_exporters_passed_to_engine(self, clock):
        engine = build_engine(cfg=EngineCFG(), clock=clock, exporters={"xlsx": lambda bundle: "workbook"})

        assert engine.facade.export("acme", "xlsx") == "workbook"


# =============================================================================
# Delegation
# =============================================================================

class TestDelegates:

    def test_views(self, founded):
        assert founded.facade.current_cap_table("acme") == founded.aggregator.current_cap_table("acme")
        assert founded.facade.fully_diluted("acme").summary.fully_diluted_shares == Decimal("1000000")

    def test_history_and_integrity(self, founded, clock):
        first = founded.snapshots.create_snapshot("acme")
        clock.advance(days=1)
        second = founded.snapshots.create_snapshot("acme")

        page = founded.facade.history("acme", limit=1)
        assert [s.id for s in page.data] == [second.id]
        assert page.meta.total_pages == 2
        assert founded.facade.snapshot_as_of("acme", first.snapshot_date).id == first.id
        assert founded.facade.verify_integrity("acme").status == "VALID"

    def test_verify_audit_trail(self, founded):
        result = founded.facade.verify_audit_trail("acme")

        assert result.status == "VALID"
        assert result.records_checked == len(founded.audit.entries("acme"))
