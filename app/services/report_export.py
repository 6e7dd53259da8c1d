"""
Spreadsheet export of reconciliation tabs and closure history.
"""
import logging
from io import BytesIO
from typing import Any, Dict, List, Sequence, Tuple

import pandas as pd

from app.core.exceptions import ValidationException

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MEDIA_TYPE = "text/csv"

EXPORT_FORMATS = ("xlsx", "csv")

# tab -> (sheet title, column -> header)
RECONCILIATION_TABS: Dict[str, Tuple[str, Dict[str, str]]] = {
    "matched": ("Conferidos", {
        "document_id": "CPF", "name": "Nome", "kind": "Tipo", "plan_name": "Plano",
        "cost_center": "Centro de custo", "monthly_fee": "Mensalidade", "charged_amount": "Valor cobrado",
    }),
    "mismatched": ("Divergentes", {
        "document_id": "CPF", "name": "Nome", "kind": "Tipo", "plan_name": "Plano",
        "cost_center": "Centro de custo", "monthly_fee": "Mensalidade", "charged_amount": "Valor cobrado",
        "difference": "Diferenca",
    }),
    "only_in_invoice": ("Somente na fatura", {
        "document_id": "CPF", "invoice_name": "Nome na fatura", "charged_amount": "Valor cobrado",
    }),
    "only_in_registry": ("Somente no cadastro", {
        "document_id": "CPF", "name": "Nome", "kind": "Tipo", "plan_name": "Plano",
        "cost_center": "Centro de custo", "monthly_fee": "Mensalidade",
    }),
    "duplicates": ("Duplicados", {
        "document_id": "CPF", "name": "Nome", "occurrences": "Ocorrencias", "sum": "Soma",
        "amounts": "Valores", "monthly_fee": "Mensalidade",
    }),
    "lines": ("Fatura", {
        "document_id": "CPF", "beneficiary_name": "Nome", "charged_amount": "Valor cobrado", "status": "Situacao",
    }),
}

HISTORY_COLUMNS = {
    "reference_month": "Competencia",
    "insurer_id": "Operadora",
    "status": "Status",
    "declared_total": "Total declarado",
    "invoice_total": "Total da fatura",
    "difference": "Diferenca",
    "closed_at": "Fechado em",
    "notes": "Observacoes",
}


def _frame(rows: Sequence[Dict[str, Any]], columns: Dict[str, str]) -> pd.DataFrame:
    records = []
    for row in rows:
        record = {}
        for key in columns:
            value = row.get(key)
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            elif hasattr(value, "isoformat"):
                value = value.isoformat()
            record[key] = value
        records.append(record)
    return pd.DataFrame(records, columns=list(columns)).rename(columns=columns)


def _render(df: pd.DataFrame, sheet_name: str, fmt: str) -> bytes:
    if fmt == "csv":
        # BOM so Excel opens accented names correctly
        return df.to_csv(index=False, sep=";").encode("utf-8-sig")

    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=sheet_name[:31], index=False)
    return buffer.getvalue()


def _check_format(fmt: str) -> str:
    fmt = (fmt or "xlsx").lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationException("Export format must be xlsx or csv", details={"format": fmt})
    return fmt


def media_type_for(fmt: str) -> str:
    return CSV_MEDIA_TYPE if fmt == "csv" else XLSX_MEDIA_TYPE


def export_reconciliation(report: Dict[str, Any], tab: str, fmt: str = "xlsx") -> Tuple[bytes, str, str]:
    """Returns (content, media type, file name) for one tab of a report."""
    fmt = _check_format(fmt)
    if tab not in RECONCILIATION_TABS:
        raise ValidationException(
            "Unknown reconciliation tab",
            details={"tab": tab, "allowed": list(RECONCILIATION_TABS)},
        )
    sheet_name, columns = RECONCILIATION_TABS[tab]
    df = _frame(report.get(tab, []), columns)
    filename = f"conciliacao_{report['reference_month']}_{tab}.{fmt}"
    logger.info(f"Exporting {len(df)} row(s) of {tab} as {fmt}")
    return _render(df, sheet_name, fmt), media_type_for(fmt), filename


def export_history(items: List[Dict[str, Any]], fmt: str = "xlsx") -> Tuple[bytes, str, str]:
    fmt = _check_format(fmt)
    df = _frame(items, HISTORY_COLUMNS)
    return _render(df, "Historico", fmt), media_type_for(fmt), f"historico_conciliacao.{fmt}"
