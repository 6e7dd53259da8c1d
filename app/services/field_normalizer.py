"""
Column resolution and value normalization for loosely structured uploads.

Rosters and invoices arrive with whatever headers the insurer or the HR system
felt like using ("CPF", "Cpf_Beneficiario", "DOCUMENTO", or no usable header at
all). Every lookup goes through the same pipeline:

    label normalize -> exact alias -> substring alias -> content heuristic

and reports which strategy produced the value, since a silent misdetection is
the usual way these imports go wrong.
"""
from __future__ import annotations

import re
import unicodedata
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from app.models.enums import BeneficiaryKind

RawValue = Union[str, int, float, Decimal, date, datetime, None]
RawRow = Dict[str, RawValue]

# Semantic fields
NAME = "name"
DOCUMENT_ID = "document_id"
DEPENDENT_DOCUMENT_ID = "dependent_document_id"
AMOUNT = "amount"
KIND = "kind"
RELATIONSHIP = "relationship"
ENROLLMENT_CODE = "enrollment_code"
ENTRY_DATE = "entry_date"
EXIT_DATE = "exit_date"
BIRTH_DATE = "birth_date"
SEX = "sex"
PLAN = "plan"
COST_CENTER = "cost_center"
AGE_BRACKET = "age_bracket"
STATE = "state"
CONTRACT = "contract"
CARD_NUMBER = "card_number"
STATUS = "status"
REMARK = "remark"

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    NAME: (
        "nome", "nomecompleto", "beneficiario", "nomebeneficiario", "nome_beneficiario",
        "nomebeneficiariooperadora", "nmbeneficiario", "usuario", "segurado", "name", "fullname",
    ),
    DOCUMENT_ID: (
        "cpf", "documento", "cpf_beneficiario", "cpfbeneficiario", "cpf_documento",
        "cpfbeneficiariooperadora", "cpfcnpj", "nrcpf", "document", "documentid",
    ),
    DEPENDENT_DOCUMENT_ID: ("cpf_dependente", "cpfdependente", "documentodependente"),
    AMOUNT: (
        "valor", "valorcobrado", "valor_cobrado", "mensalidade", "valor_mensalidade",
        "valor_mensal", "vlmensalidade", "premio", "premio_mensal", "fatura",
        "valorcontrato", "valor_contrato", "vlcobrado", "vl_cobrado", "vlpago", "vl_pago",
        "valorplano", "valor_plano", "cobrado", "amount", "monthlyfee",
    ),
    KIND: ("tipo", "tipo_usuario", "tipousuario", "tipobeneficiario", "tipo_beneficiario", "kind"),
    RELATIONSHIP: ("grau_parentesco", "grauparentesco", "parentesco", "relacao", "relationship"),
    ENROLLMENT_CODE: ("matricula", "matriculafuncionario", "codigo_matricula", "enrollment", "enrollmentcode"),
    ENTRY_DATE: (
        "dataentrada", "data_entrada", "dt_admissao", "dtadmissao", "admissao", "datainclusao",
        "dtinclusao", "iniciovigencia", "datavigencia", "entrydate",
    ),
    # exit date and status are never read from the roster, their labels only help find the header row
    EXIT_DATE: ("datasaida", "data_saida", "dt_cancelamento", "dtcancelamento", "dataexclusao", "exitdate"),
    BIRTH_DATE: ("data_nascimento", "datanascimento", "dtnascimento", "nascimento", "birthdate"),
    SEX: ("sexo", "genero", "sex", "gender"),
    PLAN: ("plano", "nomeplano", "produto", "plan", "planname"),
    COST_CENTER: ("centro_custo", "centrocusto", "centrodecusto", "costcenter", "lotacao"),
    AGE_BRACKET: ("faixa_etaria", "faixaetaria", "faixa", "agebracket"),
    STATE: ("uf", "uf_endereco", "ufendereco", "estado", "state"),
    CONTRACT: ("contrato", "numerocontrato", "nrcontrato", "contract"),
    CARD_NUMBER: ("carteirinha", "credencial", "codigo_usuario", "codigousuario", "cartao", "cardnumber"),
    # header detection only, see EXIT_DATE
    STATUS: ("status", "situacao", "situacaobeneficiario"),
    REMARK: ("observacao", "observacoes", "obs", "comentario", "motivo", "movimentacao", "remark"),
}

# labels that contain an alias but mean something else
SUBSTRING_EXCLUSIONS: Dict[str, Tuple[str, ...]] = {
    NAME: (
        "mae", "pai", "social", "plano", "empresa", "congenere", "unidade", "titular",
        "operadora", "arquivo", "tipo", "codigo", "cpf", "data", "valor",
    ),
    DOCUMENT_ID: ("dependente", "titular"),
    AMOUNT: ("coparticipacao", "desconto"),
    KIND: ("logradouro", "tabela", "plano"),
    PLAN: ("valor", "codigo"),
    STATE: ("orgao", "civil"),
    CONTRACT: ("valor",),
}

MONEY_CANONICAL_RE = re.compile(r"^-?\d+(\.\d{1,2})?$")
# optional R$, thousands separators, comma or dot decimal, optional trailing minus
MONEY_CONTENT_RE = re.compile(r"^(?:R\$)?\s*-?\d{1,3}(?:[.,\s]?\d{3})*(?:[.,]\d{1,2})?-?$|^(?:R\$)?\s*-?\d+(?:[.,]\d{1,2})?-?$", re.IGNORECASE)
EXCEL_EPOCH = date(1899, 12, 30)
_EXCEL_SERIAL_MAX = 2958465  # 9999-12-31
_TEXT_SERIAL_MIN = 10000

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d.%m.%Y", "%d/%m/%y", "%Y%m%d")


@dataclass(frozen=True)
class ResolvedField:
    field: str
    column: Optional[str]
    value: RawValue
    strategy: str  # "alias" | "substring" | "content" | "none"

    @property
    def found(self) -> bool:
        return self.column is not None


def strip_accents(text: str) -> str:
    return "".join(ch for ch in unicodedata.normalize("NFD", text) if unicodedata.category(ch) != "Mn")


def normalize_label(label: Any) -> str:
    """'Cpf_Beneficiário ' -> 'cpfbeneficiario'"""
    text = strip_accents(str(label if label is not None else "")).lower()
    return re.sub(r"[\s_.\-]+", "", text)


_ALIAS_INDEX: Dict[str, Tuple[str, ...]] = {
    field: tuple(dict.fromkeys(normalize_label(a) for a in aliases))
    for field, aliases in FIELD_ALIASES.items()
}


def is_blank(value: RawValue) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and value != value:  # NaN
        return True
    return isinstance(value, str) and not value.strip()


def clean_text(value: RawValue) -> Optional[str]:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def non_empty_count(row: Mapping[str, RawValue]) -> int:
    return sum(1 for v in row.values() if not is_blank(v))


# ---------------------------------------------------------------------------
# Column resolution
# ---------------------------------------------------------------------------

def _label_matches(row: Mapping[str, RawValue], field: str, exact: bool) -> list:
    aliases = _ALIAS_INDEX[field]
    excluded = SUBSTRING_EXCLUSIONS.get(field, ())
    matches = []
    for column in row.keys():
        label = normalize_label(column)
        if not label:
            continue
        if exact:
            if label in aliases:
                # rank by alias order so "cpf" beats "documento"
                matches.append((aliases.index(label), column))
        else:
            if any(word in label for word in excluded):
                continue
            if any(alias in label for alias in aliases if len(alias) >= 3):
                matches.append((0, column))
    matches.sort(key=lambda item: item[0])
    return [column for _, column in matches]


def _pick_first_filled(row: Mapping[str, RawValue], columns: list) -> Tuple[str, RawValue]:
    for column in columns:
        if not is_blank(row[column]):
            return column, row[column]
    return columns[0], None


def _looks_like_document(value: RawValue) -> bool:
    if isinstance(value, (date, datetime)) or is_blank(value):
        return False
    if isinstance(value, float):
        if not value.is_integer():
            return False
        value = int(value)
    text = str(value)
    if re.search(r"[A-Za-z]", text):
        return False
    return len(re.sub(r"\D", "", text)) == 11


def _looks_like_money(value: RawValue) -> bool:
    if isinstance(value, (date, datetime, bool)) or is_blank(value):
        return False
    if isinstance(value, (int, float, Decimal)):
        # bare numbers only count when they carry cents
        return isinstance(value, (float, Decimal)) and not float(value).is_integer()
    text = str(value).strip().replace(" ", " ")
    if not MONEY_CONTENT_RE.match(text):
        return False
    has_currency = text.upper().startswith("R$")
    has_decimals = re.search(r"[.,]\d{1,2}-?$", text) is not None
    return has_currency or has_decimals


def _looks_like_name(value: RawValue) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip()
    if len(text) < 5 or parse_date(text) is not None:
        return False
    words = [w for w in text.split() if re.search(r"[^\W\d_]", w)]
    return len(words) >= 2 and not re.search(r"\d", text)


_CONTENT_PROBES = {
    DOCUMENT_ID: _looks_like_document,
    AMOUNT: _looks_like_money,
    NAME: _looks_like_name,
}


def resolve_field(row: Mapping[str, RawValue], field: str, claimed: Iterable[str] = ()) -> ResolvedField:
    """
    Best-guess value of ``field`` in ``row``.

    ``claimed`` lists columns already attributed to other fields; they are
    skipped by the content heuristics (label matches are trusted as-is).
    """
    if field not in _ALIAS_INDEX:
        raise KeyError(f"Unknown field: {field}")

    exact = _label_matches(row, field, exact=True)
    if exact:
        column, value = _pick_first_filled(row, exact)
        return ResolvedField(field, column, value, "alias")

    partial = _label_matches(row, field, exact=False)
    if partial:
        column, value = _pick_first_filled(row, partial)
        return ResolvedField(field, column, value, "substring")

    probe = _CONTENT_PROBES.get(field)
    if probe is not None:
        taken = set(claimed)
        for column, value in row.items():
            if column in taken:
                continue
            if probe(value):
                return ResolvedField(field, column, value, "content")

    return ResolvedField(field, None, None, "none")


def resolve_fields(row: Mapping[str, RawValue], fields: Iterable[str]) -> Dict[str, ResolvedField]:
    """
    Resolve several fields of one row. Document id and amount are resolved
    before name so the name heuristic never grabs their columns.
    """
    order = {DOCUMENT_ID: 0, AMOUNT: 1, NAME: 3}
    resolved: Dict[str, ResolvedField] = {}
    claimed: list = []
    for field in sorted(fields, key=lambda f: order.get(f, 2)):
        result = resolve_field(row, field, claimed)
        if result.column is not None:
            claimed.append(result.column)
        resolved[field] = result
    return resolved


def summarize_resolution(resolved_rows: Iterable[Mapping[str, ResolvedField]]) -> Dict[str, Dict[str, Any]]:
    """
    Per field, the column (and strategy) that resolved it most often across a
    file, with the number of rows it did so for.
    """
    tallies: Dict[str, Counter] = {}
    for resolved in resolved_rows:
        for field, result in resolved.items():
            if result.found:
                tallies.setdefault(field, Counter())[(result.column, result.strategy)] += 1

    summary: Dict[str, Dict[str, Any]] = {}
    for field, counter in tallies.items():
        (column, strategy), rows = counter.most_common(1)[0]
        summary[field] = {"column": column, "strategy": strategy, "rows": rows}
    return summary


def jsonable_row(row: Mapping[str, RawValue]) -> Dict[str, Any]:
    """Copy of a raw row that can go into a JSON column."""
    out: Dict[str, Any] = {}
    for column, value in row.items():
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, float) and value != value:
            value = None
        out[str(column)] = value
    return out


def contains_keyword(raw: RawValue, keywords: Iterable[str]) -> bool:
    text = strip_accents(clean_text(raw) or "").lower()
    return bool(text) and any(keyword in text for keyword in keywords)


# ---------------------------------------------------------------------------
# Value normalizers
# ---------------------------------------------------------------------------

def classify_kind(raw: RawValue, relationship: RawValue = None) -> Optional[BeneficiaryKind]:
    """
    Bucket free-text beneficiary types. Undifferentiated dependents become
    CHILD; the relationship column, when present, refines a non-titular row.
    """
    text = strip_accents(clean_text(raw) or "").strip().upper()
    rel = strip_accents(clean_text(relationship) or "").strip().upper()
    if not text and not rel:
        return None

    if text.startswith("TITULAR"):
        return BeneficiaryKind.TITULAR
    if _is_spouse(text) or (not text.startswith("FILHO") and _is_spouse(rel)):
        return BeneficiaryKind.SPOUSE
    if not text and rel.startswith("TITULAR"):
        return BeneficiaryKind.TITULAR
    return BeneficiaryKind.CHILD


def _is_spouse(text: str) -> bool:
    return text.startswith(("CONJUGE", "CONJUGUE", "ESPOSA", "ESPOSO", "COMPANHEIR", "SPOUSE"))


def normalize_money(raw: RawValue) -> Optional[str]:
    """
    Normalize a monetary cell to a fixed two-decimal string.

    >>> normalize_money("R$ 1.234,56")
    '1234.56'
    >>> normalize_money("1234,56-")
    '-1234.56'
    """
    if is_blank(raw) or isinstance(raw, (bool, date, datetime)):
        return None

    if isinstance(raw, (int, float, Decimal)):
        try:
            amount = Decimal(str(raw))
        except InvalidOperation:
            return None
        if not amount.is_finite():
            return None
        cents = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if amount.normalize().as_tuple().exponent < -2:
            # float noise such as 0.30000000000000004 is not a third decimal
            if not isinstance(raw, float) or abs(amount - cents) > Decimal("1e-9"):
                return None
        return format_amount(cents)

    text = str(raw).strip()
    text = re.sub(r"(?i)r\$", "", text)
    text = re.sub(r"[\s ]+", "", text)
    if not text:
        return None

    negative = False
    signs = 0
    if text.startswith("(") and text.endswith(")"):
        negative, text, signs = True, text[1:-1], signs + 1
    if text.endswith("-"):
        negative, text, signs = True, text[:-1], signs + 1
    if text.startswith("-"):
        negative, text, signs = True, text[1:], signs + 1
    elif text.startswith("+"):
        text, signs = text[1:], signs + 1
    # one sign marker at most
    if signs > 1 or text[:1] in ("-", "+"):
        return None

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        if text.count(",") > 1:
            return None
        text = text.replace(",", ".")
    elif text.count(".") > 1 or re.match(r"^\d{1,3}\.\d{3}$", text):
        # "1.234.567" or "1.234": dots are thousands separators
        text = text.replace(".", "")

    if not MONEY_CANONICAL_RE.match(text):
        return None

    amount = Decimal(text)
    if negative:
        amount = -amount
    return format_amount(amount)


def format_amount(amount: Decimal) -> str:
    amount = amount.quantize(Decimal("0.01"))
    if amount == 0:
        amount = Decimal("0.00")
    return f"{amount:.2f}"


def to_decimal(amount: Optional[str]) -> Decimal:
    """Two-decimal string (or None) to Decimal; missing amounts count as zero."""
    if amount is None:
        return Decimal("0.00")
    return Decimal(str(amount)).quantize(Decimal("0.01"))


def normalize_document_id(raw: RawValue, legacy_pad: bool = True) -> Optional[str]:
    """
    Digits-only CPF, exactly 11 digits, or None.

    With ``legacy_pad`` shorter inputs are left-padded with zeros, matching the
    historical intake; without it they are rejected.
    """
    if is_blank(raw) or isinstance(raw, (bool, date, datetime)):
        return None
    if isinstance(raw, float):
        if not raw.is_integer():
            return None
        raw = int(raw)
    text = str(raw).strip()
    if re.search(r"\d[eE][+-]?\d", text):
        # scientific notation already lost digits
        return None
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    if len(digits) < 11 and legacy_pad:
        digits = digits.zfill(11)
    if len(digits) != 11 or set(digits) == {"0"}:
        return None
    return digits


def from_excel_serial(serial: float) -> date:
    return EXCEL_EPOCH + timedelta(days=int(serial))


def parse_date(raw: RawValue) -> Optional[date]:
    """Accepts native dates, Excel serials, ISO and Brazilian day-first formats."""
    if is_blank(raw) or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float, Decimal)):
        serial = float(raw)
        if 0 < serial <= _EXCEL_SERIAL_MAX:
            return from_excel_serial(serial)
        return None

    text = str(raw).strip()
    if re.fullmatch(r"\d{1,5}(\.\d+)?", text):
        # serials below 10000 (before 1927) in text are years or codes, not dates
        serial = float(text)
        return parse_date(serial) if serial >= _TEXT_SERIAL_MIN else None

    iso = re.match(r"^(\d{4}-\d{2}-\d{2})[T ]", text)
    if iso:
        text = iso.group(1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_sex(raw: RawValue) -> Optional[str]:
    text = strip_accents(clean_text(raw) or "").upper()
    if text.startswith("M"):
        return "M"
    if text.startswith("F"):
        return "F"
    return None


def normalize_state(raw: RawValue) -> Optional[str]:
    text = (clean_text(raw) or "").upper()
    return text if re.fullmatch(r"[A-Z]{2}", text) else None
