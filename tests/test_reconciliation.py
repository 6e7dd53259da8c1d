import uuid
from datetime import date, datetime
from decimal import Decimal
from io import BytesIO

import pandas as pd
import pytest
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictException, NotFoundException, ValidationException
from app.models.beneficiary_model import Beneficiary
from app.models.enums import BeneficiaryKind, BeneficiaryStatus, ClosureStatus
from app.models.reconciliation_model import ReconciliationClosure
from app.services.invoice_import_service import import_invoice
from app.services.reconciliation_service import (
    ReconciliationFilters,
    build_reconciliation,
    close_reconciliation,
    get_filter_options,
    list_closure_history,
    reopen_reconciliation,
    update_closure,
)
from app.services.report_export import export_history, export_reconciliation

MAY = date(2024, 5, 1)


def add_beneficiary(db, client_id, document_id, fee="100.00", kind=BeneficiaryKind.TITULAR, titular=None,
                    plan="Enfermaria", cost_center="ADM", inactive=False, name=None):
    beneficiary = Beneficiary(
        beneficiary_id=uuid.uuid4(),
        client_id=client_id,
        full_name=name or f"Pessoa {document_id[-3:]}",
        document_id=document_id,
        kind=kind,
        titular_id=titular.beneficiary_id if titular is not None else None,
        monthly_fee=Decimal(fee) if fee is not None else None,
        plan_name=plan,
        cost_center=cost_center,
        entry_date=date(2024, 1, 1),
        status=BeneficiaryStatus.INACTIVE if inactive else BeneficiaryStatus.ACTIVE,
        exit_date=date(2024, 3, 1) if inactive else None,
    )
    db.add(beneficiary)
    db.commit()
    return beneficiary


def load_invoice(db, client_id, lines, month=MAY, insurer_id=None):
    rows = [{"cpf": doc, "valor": amount, "nome": f"Fatura {doc[-3:]}"} for doc, amount in lines]
    return import_invoice(db, client_id, rows, month, insurer_id=insurer_id)


def test_scenario_b_duplicate_group(db_session, client_id):
    add_beneficiary(db_session, client_id, "11111111111", fee="100.00")
    load_invoice(db_session, client_id, [("11111111111", "100,00"), ("11111111111", "150,00")])

    report = build_reconciliation(db_session, client_id, MAY)

    assert len(report["duplicates"]) == 1
    duplicate = report["duplicates"][0]
    assert duplicate["document_id"] == "11111111111"
    assert duplicate["occurrences"] == 2
    assert duplicate["sum"] == "250.00"
    assert duplicate["amounts"] == ["100.00", "150.00"]
    assert report["matched"] == [] and report["mismatched"] == []
    assert report["only_in_registry"] == []
    assert report["summary"]["registry_in_duplicates"] == 1
    assert report["summary"]["duplicate_sum"] == "250.00"
    assert {line["status"] for line in report["lines"]} == {"DUPLICATE"}


def test_scenario_c_mismatch_difference(db_session, client_id):
    add_beneficiary(db_session, client_id, "11111111111", fee="100.00")
    load_invoice(db_session, client_id, [("11111111111", "120,00")])

    report = build_reconciliation(db_session, client_id, MAY)

    assert len(report["mismatched"]) == 1
    entry = report["mismatched"][0]
    assert entry["charged_amount"] == "120.00"
    assert entry["monthly_fee"] == "100.00"
    assert entry["difference"] == "20.00"
    assert report["summary"]["mismatched_difference_sum"] == "20.00"
    assert report["lines"][0]["status"] == "MISMATCHED"


def test_scenario_d_close_and_refuse_second_close(db_session, client_id):
    load_invoice(db_session, client_id, [("11111111111", "4.000,00")])

    closure = close_reconciliation(db_session, client_id, MAY, "5000.00", notes="fatura maio")
    assert closure.status == ClosureStatus.CLOSED
    assert closure.declared_total == Decimal("5000.00")
    assert closure.closed_at is not None
    assert closure.snapshot["invoice_sum"] == "4000.00"
    closed_at = closure.closed_at

    with pytest.raises(ConflictException):
        close_reconciliation(db_session, client_id, MAY, "1.00", notes="sobrescrever")

    db_session.expire_all()
    stored = db_session.query(ReconciliationClosure).one()
    assert stored.declared_total == Decimal("5000.00")
    assert stored.notes == "fatura maio"
    assert stored.closed_at == closed_at

    report = build_reconciliation(db_session, client_id, MAY)
    assert report["closure"]["status"] == "CLOSED"
    assert report["closure"]["declared_total"] == "5000.00"
    assert report["closure"]["difference"] == "1000.00"


def test_classification_is_a_partition(db_session, client_id):
    titular = add_beneficiary(db_session, client_id, "11111111111", fee="100.00")
    add_beneficiary(db_session, client_id, "22222222222", fee="50.00", kind=BeneficiaryKind.CHILD, titular=titular)
    add_beneficiary(db_session, client_id, "33333333333", fee="70.00")
    add_beneficiary(db_session, client_id, "44444444444", fee="80.00")
    add_beneficiary(db_session, client_id, "55555555555", fee="90.00")
    add_beneficiary(db_session, client_id, "66666666666", fee="10.00", inactive=True)
    load_invoice(db_session, client_id, [
        ("11111111111", "100,00"),   # matched
        ("22222222222", "55,00"),    # mismatched
        ("33333333333", "70,00"),    # duplicated
        ("33333333333", "70,00"),
        ("77777777777", "30,00"),    # only in invoice
        ("66666666666", "10,00"),    # inactive beneficiary, so only in invoice
    ])

    report = build_reconciliation(db_session, client_id, MAY)
    summary = report["summary"]

    invoice_buckets = (
        sum(d["occurrences"] for d in report["duplicates"])
        + len(report["matched"]) + len(report["mismatched"]) + len(report["only_in_invoice"])
    )
    assert invoice_buckets == summary["invoice_count"] == 6

    registry_docs = (
        [e["document_id"] for e in report["matched"]]
        + [e["document_id"] for e in report["mismatched"]]
        + [e["document_id"] for e in report["only_in_registry"]]
    )
    assert len(registry_docs) == len(set(registry_docs))
    assert len(registry_docs) + summary["registry_in_duplicates"] == summary["active_count"] == 5

    assert [e["document_id"] for e in report["only_in_invoice"]] == ["66666666666", "77777777777"]
    assert sorted(e["document_id"] for e in report["only_in_registry"]) == ["44444444444", "55555555555"]
    assert summary["invoice_sum"] == "335.00"
    assert summary["matched_sum"] == "100.00"
    assert summary["only_in_invoice_sum"] == "40.00"
    assert summary["only_in_registry_sum"] == "170.00"
    assert len(report["lines"]) == 6


def test_missing_fee_counts_as_zero(db_session, client_id):
    add_beneficiary(db_session, client_id, "11111111111", fee=None)
    load_invoice(db_session, client_id, [("11111111111", "0,00")])
    report = build_reconciliation(db_session, client_id, MAY)
    assert len(report["matched"]) == 1
    assert report["matched"][0]["monthly_fee"] == "0.00"


def test_filters_restrict_registry_side(db_session, client_id):
    titular = add_beneficiary(db_session, client_id, "11111111111", fee="100.00", plan="Apartamento")
    add_beneficiary(db_session, client_id, "22222222222", fee="50.00", kind=BeneficiaryKind.SPOUSE, titular=titular)
    load_invoice(db_session, client_id, [("11111111111", "100,00"), ("22222222222", "50,00")])

    dependents = build_reconciliation(db_session, client_id, MAY, ReconciliationFilters(kind="dependent"))
    assert [e["document_id"] for e in dependents["matched"]] == ["22222222222"]
    assert [e["document_id"] for e in dependents["only_in_invoice"]] == ["11111111111"]

    by_plan = build_reconciliation(db_session, client_id, MAY, ReconciliationFilters(plan="Apartamento"))
    assert [e["document_id"] for e in by_plan["matched"]] == ["11111111111"]
    assert by_plan["filters"] == {"kind": None, "plan": "Apartamento", "cost_center": None}

    with pytest.raises(ValidationException):
        ReconciliationFilters(kind="COUSIN")


def test_first_view_opens_closure_once(db_session, client_id):
    build_reconciliation(db_session, client_id, MAY)
    report = build_reconciliation(db_session, client_id, MAY)
    assert report["closure"]["status"] == "OPEN"
    assert report["closure"]["declared_total"] is None
    assert db_session.query(ReconciliationClosure).count() == 1


def test_one_closure_per_period_without_insurer(db_session, client_id):
    build_reconciliation(db_session, client_id, MAY)
    db_session.add(ReconciliationClosure(client_id=client_id, reference_month=MAY, status=ClosureStatus.OPEN))
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()

    # a named insurer is a separate period
    build_reconciliation(db_session, client_id, MAY, insurer_id="ins-a")
    assert db_session.query(ReconciliationClosure).count() == 2


def test_insurer_snapshots_reconciled_separately(db_session, client_id):
    add_beneficiary(db_session, client_id, "11111111111", fee="100.00")
    load_invoice(db_session, client_id, [("11111111111", "100,00")], insurer_id="ins-a")
    load_invoice(db_session, client_id, [("11111111111", "90,00")], insurer_id="ins-b")

    a = build_reconciliation(db_session, client_id, MAY, insurer_id="ins-a")
    b = build_reconciliation(db_session, client_id, MAY, insurer_id="ins-b")
    assert len(a["matched"]) == 1
    assert b["mismatched"][0]["difference"] == "-10.00"
    assert db_session.query(ReconciliationClosure).count() == 2


class TestClosureLifecycle:
    def test_update_requires_closed_period(self, db_session, client_id):
        with pytest.raises(NotFoundException):
            update_closure(db_session, client_id, MAY, declared_total="1.00")
        build_reconciliation(db_session, client_id, MAY)
        with pytest.raises(ConflictException):
            update_closure(db_session, client_id, MAY, declared_total="1.00")

    def test_explicit_update(self, db_session, client_id):
        close_reconciliation(db_session, client_id, MAY, "5000.00")
        closure = update_closure(db_session, client_id, MAY, declared_total="5100.50", notes="corrigido")
        assert closure.declared_total == Decimal("5100.50")
        assert closure.notes == "corrigido"
        assert closure.status == ClosureStatus.CLOSED

    def test_stale_update_rejected(self, db_session, client_id):
        close_reconciliation(db_session, client_id, MAY, "5000.00")
        with pytest.raises(ConflictException):
            update_closure(db_session, client_id, MAY, declared_total="1.00", expected_updated_at=datetime(2000, 1, 1))

        current = db_session.query(ReconciliationClosure).one()
        closure = update_closure(db_session, client_id, MAY, notes="ok", expected_updated_at=current.updated_at)
        assert closure.notes == "ok"

    def test_reopen(self, db_session, client_id):
        close_reconciliation(db_session, client_id, MAY, "5000.00")
        closure = reopen_reconciliation(db_session, client_id, MAY)
        assert closure.status == ClosureStatus.OPEN
        assert closure.closed_at is None
        assert closure.declared_total == Decimal("5000.00")
        with pytest.raises(ConflictException):
            reopen_reconciliation(db_session, client_id, MAY)

        closure = close_reconciliation(db_session, client_id, MAY, "4900.00")
        assert closure.declared_total == Decimal("4900.00")

    def test_invalid_declared_total(self, db_session, client_id):
        with pytest.raises(ValidationException):
            close_reconciliation(db_session, client_id, MAY, "five thousand")


def test_history_and_options(db_session, client_id):
    add_beneficiary(db_session, client_id, "11111111111", plan="Enfermaria", cost_center="ADM")
    add_beneficiary(db_session, client_id, "22222222222", plan="Apartamento", cost_center="FAB")
    add_beneficiary(db_session, client_id, "33333333333", plan="Executivo", inactive=True)
    load_invoice(db_session, client_id, [("11111111111", "100,00")])
    load_invoice(db_session, client_id, [("11111111111", "100,00"), ("22222222222", "100,00")], month=date(2024, 6, 1))

    close_reconciliation(db_session, client_id, MAY, "120.00")
    build_reconciliation(db_session, client_id, date(2024, 6, 1))

    items, total, summary = list_closure_history(db_session, client_id)
    assert total == 2
    assert [i["reference_month"] for i in items] == ["2024-06", "2024-05"]
    assert items[1]["invoice_total"] == "100.00"
    assert items[1]["difference"] == "20.00"
    assert summary == {
        "periods": 2, "closed": 1, "open": 1,
        "declared_sum": "120.00", "invoice_sum": "300.00", "difference": "-180.00",
    }

    items, total, _ = list_closure_history(db_session, client_id, status=ClosureStatus.CLOSED)
    assert total == 1 and items[0]["status"] == "CLOSED"
    items, total, _ = list_closure_history(db_session, client_id, from_month=date(2024, 6, 1))
    assert [i["reference_month"] for i in items] == ["2024-06"]
    items, _, _ = list_closure_history(db_session, client_id, order="asc", page=1, page_size=1)
    assert [i["reference_month"] for i in items] == ["2024-05"]

    options = get_filter_options(db_session, client_id)
    assert options["plans"] == ["Apartamento", "Enfermaria"]
    assert options["cost_centers"] == ["ADM", "FAB"]
    assert "DEPENDENT" in options["kinds"]


def test_exports(db_session, client_id):
    add_beneficiary(db_session, client_id, "11111111111", fee="100.00")
    load_invoice(db_session, client_id, [("11111111111", "120,00"), ("99999999999", "5,00")])
    report = build_reconciliation(db_session, client_id, MAY)

    content, media_type, filename = export_reconciliation(report, "mismatched", "xlsx")
    assert content[:2] == b"PK"
    assert filename == "conciliacao_2024-05_mismatched.xlsx"
    sheet = pd.read_excel(BytesIO(content), engine="openpyxl", dtype=str)
    assert list(sheet["CPF"]) == ["11111111111"]
    assert list(sheet["Diferenca"]) == ["20.00"]

    content, media_type, _ = export_reconciliation(report, "only_in_invoice", "csv")
    assert media_type == "text/csv"
    text = content.decode("utf-8-sig")
    assert text.splitlines()[0] == "CPF;Nome na fatura;Valor cobrado"
    assert "99999999999" in text

    items, _, _ = list_closure_history(db_session, client_id)
    content, _, filename = export_history(items, "csv")
    assert filename == "historico_conciliacao.csv"
    assert "2024-05" in content.decode("utf-8-sig")

    with pytest.raises(ValidationException):
        export_reconciliation(report, "everything", "xlsx")
    with pytest.raises(ValidationException):
        export_reconciliation(report, "matched", "pdf")
