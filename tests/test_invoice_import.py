from datetime import date

import pytest

from app.core.exceptions import InvalidReferenceMonthError, NotFoundException
from app.models.enums import InvoiceLineStatus
from app.models.invoice_model import ImportedInvoiceLine
from app.services.invoice_import_service import (
    delete_invoice_month,
    import_invoice,
    list_invoice_lines,
    mark_lines_reconciled,
    parse_reference_month,
)

MAY = date(2024, 5, 1)


def invoice_rows():
    return [
        {"Beneficiario": "Joao Titular", "CPF": "111.111.111-11", "Valor Cobrado": "R$ 100,00"},
        {"Beneficiario": "Maria Filha", "CPF": "22222222222", "Valor Cobrado": "50,00"},
        {"Beneficiario": "Sem Cpf", "CPF": "abc", "Valor Cobrado": "10,00"},
        {"Beneficiario": "Sem Valor", "CPF": "33333333333", "Valor Cobrado": ""},
    ]


def lines_for(db, client_id, month=MAY):
    return (
        db.query(ImportedInvoiceLine)
        .filter(ImportedInvoiceLine.client_id == client_id, ImportedInvoiceLine.reference_month == month)
        .order_by(ImportedInvoiceLine.document_id)
        .all()
    )


class TestParseReferenceMonth:
    def test_valid(self):
        assert parse_reference_month("2024-05") == MAY

    def test_default_is_current_month(self):
        assert parse_reference_month(None, default_today=date(2024, 5, 17)) == MAY

    @pytest.mark.parametrize("value", [None, "", "2024-5", "2024-13", "05/2024", "2024-05-01"])
    def test_invalid(self, value):
        with pytest.raises(InvalidReferenceMonthError):
            parse_reference_month(value)


def test_import_counts_and_stores_valid_lines(db_session, client_id):
    result = import_invoice(db_session, client_id, invoice_rows(), MAY)

    assert result["processed"] == 2
    assert result["invalid_document"] == 1
    assert result["invalid_amount"] == 1
    assert result["skipped"] == 2
    assert result["total_rows"] == 4
    assert result["reference_month"] == "2024-05"
    assert [(e["row_number"], e["reason"]) for e in result["errors"]] == [(4, "invalid_document"), (5, "invalid_amount")]
    assert result["detected_columns"]["amount"] == {"column": "Valor Cobrado", "strategy": "alias", "rows": 4}
    assert result["sample_columns"] == ["beneficiario", "cpf", "valorcobrado"]

    lines = lines_for(db_session, client_id)
    assert [(l.document_id, l.charged_amount) for l in lines] == [("11111111111", "100.00"), ("22222222222", "50.00")]
    assert lines[0].beneficiary_name == "Joao Titular"
    assert lines[0].reconciliation_status == InvoiceLineStatus.PENDING
    assert lines[0].raw["CPF"] == "111.111.111-11"


def test_reupload_replaces_snapshot(db_session, client_id):
    import_invoice(db_session, client_id, invoice_rows(), MAY)
    import_invoice(db_session, client_id, [{"cpf": "44444444444", "valor": "70,00"}], MAY)

    lines = lines_for(db_session, client_id)
    assert [(l.document_id, l.charged_amount) for l in lines] == [("44444444444", "70.00")]


def test_snapshots_are_scoped_by_month_and_insurer(db_session, client_id):
    june = date(2024, 6, 1)
    import_invoice(db_session, client_id, invoice_rows(), MAY)
    import_invoice(db_session, client_id, invoice_rows(), MAY, insurer_id="ins-1")
    import_invoice(db_session, client_id, [{"cpf": "44444444444", "valor": "70,00"}], june)
    import_invoice(db_session, client_id, [{"cpf": "55555555555", "valor": "1,00"}], MAY, insurer_id="ins-1")

    may_lines = lines_for(db_session, client_id)
    assert len([l for l in may_lines if l.insurer_id is None]) == 2
    assert [l.document_id for l in may_lines if l.insurer_id == "ins-1"] == ["55555555555"]
    assert len(lines_for(db_session, client_id, june)) == 1


def test_nothing_valid_still_reports_columns(db_session, client_id):
    result = import_invoice(db_session, client_id, [{"foo": "bar", "baz": "x"}], MAY)
    assert result["processed"] == 0
    assert result["invalid_document"] == 1
    assert result["detected_columns"] == {}
    assert result["sample_columns"] == ["foo", "baz"]


def test_error_sample_is_capped(db_session, client_id):
    rows = [{"cpf": "x", "valor": "1,00"} for _ in range(60)]
    result = import_invoice(db_session, client_id, rows, MAY, error_limit=50)
    assert result["invalid_document"] == 60
    assert len(result["errors"]) == 50


def test_batched_insert(db_session, client_id):
    rows = [{"cpf": f"{i:011d}", "valor": "10,00"} for i in range(1, 26)]
    result = import_invoice(db_session, client_id, rows, MAY, batch_size=10)
    assert result["processed"] == 25
    assert len(lines_for(db_session, client_id)) == 25


def test_headerless_invoice_uses_content(db_session, client_id):
    rows = [{"column_1": "JOAO DA SILVA", "column_2": "111.111.111-11", "column_3": "R$ 1.234,56"}]
    result = import_invoice(db_session, client_id, rows, MAY)
    assert result["processed"] == 1
    assert result["detected_columns"]["document_id"]["strategy"] == "content"
    line = lines_for(db_session, client_id)[0]
    assert line.charged_amount == "1234.56"
    assert line.beneficiary_name == "JOAO DA SILVA"


def test_list_search_and_delete(db_session, client_id):
    import_invoice(db_session, client_id, invoice_rows(), MAY)

    items, total = list_invoice_lines(db_session, client_id, month=MAY, search="maria")
    assert total == 1 and items[0].document_id == "22222222222"
    items, total = list_invoice_lines(db_session, client_id, search="111.111")
    assert total == 1 and items[0].document_id == "11111111111"
    items, total = list_invoice_lines(db_session, client_id, page=2, page_size=1)
    assert total == 2 and len(items) == 1

    assert delete_invoice_month(db_session, client_id, MAY) == 2
    assert lines_for(db_session, client_id) == []
    with pytest.raises(NotFoundException):
        delete_invoice_month(db_session, client_id, MAY)


def test_mark_lines_reconciled(db_session, client_id):
    import_invoice(db_session, client_id, invoice_rows(), MAY)
    assert mark_lines_reconciled(db_session, client_id, MAY, document_ids=["22222222222"]) == 1
    db_session.expire_all()
    statuses = {l.document_id: l.reconciliation_status for l in lines_for(db_session, client_id)}
    assert statuses == {"11111111111": InvoiceLineStatus.PENDING, "22222222222": InvoiceLineStatus.RECONCILED}
    assert mark_lines_reconciled(db_session, client_id, MAY) == 2
