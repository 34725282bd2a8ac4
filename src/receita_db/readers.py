"""
Readers for the CNPJ open-data files published by Receita Federal.

The files have no header, use ``;`` as separator and ``"`` as quote, and
are Latin-1 encoded. They are usually distributed zipped (one CSV per
archive); both plain and zipped files are accepted.

Each reader streams ``(key, record)`` pairs row by row so a file never
has to fit in memory:

- EMPRECSV  -> (base key, BaseRecord)
- ESTABELE  -> (full key, BranchRecord)
- SOCIOCSV  -> (base key, PartnerRecord)
- SIMPLES   -> (base key, TaxRecord)
"""

import logging
import zipfile
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

import pandas as pd
from pydantic import BaseModel

from . import cnpj
from .errors import ValidationError
from .merge import BASE, BRANCHES, PARTNERS, TAXES
from .models import BaseRecord, BranchRecord, Cnae, PartnerRecord, TaxRecord

logger = logging.getLogger(__name__)

ENCODING = "latin-1"
DELIMITER = ";"
CHUNK_SIZE = 50_000

# Receita Federal code tables (layout document, "dicionário de dados")
MATRIZ_FILIAL = {1: "MATRIZ", 2: "FILIAL"}
SITUACAO_CADASTRAL = {1: "NULA", 2: "ATIVA", 3: "SUSPENSA", 4: "INAPTA", 8: "BAIXADA"}
PORTE = {0: "NÃO INFORMADO", 1: "MICRO EMPRESA", 3: "EMPRESA DE PEQUENO PORTE", 5: "DEMAIS"}
FAIXA_ETARIA = {
    0: "Não se aplica",
    1: "Entre 0 a 12 anos",
    2: "Entre 13 a 20 anos",
    3: "Entre 21 a 30 anos",
    4: "Entre 31 a 40 anos",
    5: "Entre 41 a 50 anos",
    6: "Entre 51 a 60 anos",
    7: "Entre 61 a 70 anos",
    8: "Entre 71 a 80 anos",
    9: "Maiores de 80 anos",
}


class SourceKind(str, Enum):
    """Registry source files, named after the staging namespace they feed."""
    BASE = BASE
    BRANCHES = BRANCHES
    PARTNERS = PARTNERS
    TAXES = TAXES


_FILENAME_MARKERS: list[tuple[str, SourceKind]] = [
    ("EMPRECSV", SourceKind.BASE),
    ("EMPRESAS", SourceKind.BASE),
    ("ESTABELE", SourceKind.BRANCHES),
    ("SOCIO", SourceKind.PARTNERS),
    ("SIMPLES", SourceKind.TAXES),
    ("SIMECSV", SourceKind.TAXES),
]

_COLUMNS = {
    SourceKind.BASE: 7,
    SourceKind.BRANCHES: 30,
    SourceKind.PARTNERS: 11,
    SourceKind.TAXES: 7,
}


def detect_kind(path: str | Path) -> Optional[SourceKind]:
    """Classify a registry file by its name, or None if it is not one."""
    name = Path(path).name.upper()
    for marker, kind in _FILENAME_MARKERS:
        if marker in name:
            return kind
    return None


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------

def _str(value: str) -> Optional[str]:
    value = value.strip()
    return value or None


def _int(value: str) -> Optional[int]:
    value = value.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"expected an integer, got {value!r}") from None


def _date(value: str) -> Optional[str]:
    """YYYYMMDD -> YYYY-MM-DD; zeroed dates mean unknown."""
    value = value.strip()
    if not value or set(value) == {"0"}:
        return None
    if len(value) != 8 or not value.isdigit():
        raise ValidationError(f"expected a YYYYMMDD date, got {value!r}")
    return f"{value[:4]}-{value[4:6]}-{value[6:]}"


def _capital(value: str) -> Optional[float]:
    value = value.strip()
    if not value:
        return None
    try:
        return float(value.replace(".", "").replace(",", "."))
    except ValueError:
        raise ValidationError(f"expected a decimal amount, got {value!r}") from None


def _flag(value: str) -> Optional[bool]:
    value = value.strip().upper()
    if value == "S":
        return True
    if value == "N":
        return False
    return None


def _phone(ddd: str, number: str) -> Optional[str]:
    joined = f"{ddd.strip()}{number.strip()}"
    return joined or None


def _cnaes(value: str) -> list[Cnae]:
    return [Cnae(codigo=_int(code)) for code in value.split(",") if code.strip()]


# ---------------------------------------------------------------------------
# Row parsers
# ---------------------------------------------------------------------------

def parse_base(row: list[str]) -> tuple[str, BaseRecord]:
    codigo_porte = _int(row[5])
    return cnpj.normalize_base(row[0]), BaseRecord(
        razao_social=_str(row[1]),
        codigo_natureza_juridica=_int(row[2]),
        qualificacao_do_responsavel=_int(row[3]),
        capital_social=_capital(row[4]),
        codigo_porte=codigo_porte,
        porte=PORTE.get(codigo_porte) if codigo_porte is not None else None,
        ente_federativo_responsavel=_str(row[6]),
    )


def parse_branch(row: list[str]) -> tuple[str, BranchRecord]:
    key = cnpj.full_key(row[0], row[1], row[2])
    matriz_filial = _int(row[3])
    situacao = _int(row[5])
    return key, BranchRecord(
        cnpj=key,
        identificador_matriz_filial=matriz_filial,
        descricao_identificador_matriz_filial=MATRIZ_FILIAL.get(matriz_filial) if matriz_filial else None,
        nome_fantasia=_str(row[4]),
        situacao_cadastral=situacao,
        descricao_situacao_cadastral=SITUACAO_CADASTRAL.get(situacao) if situacao else None,
        data_situacao_cadastral=_date(row[6]),
        motivo_situacao_cadastral=_int(row[7]),
        nome_cidade_no_exterior=_str(row[8]),
        codigo_pais=_int(row[9]),
        data_inicio_atividade=_date(row[10]),
        cnae_fiscal=_int(row[11]),
        cnaes_secundarios=_cnaes(row[12]),
        descricao_tipo_de_logradouro=_str(row[13]),
        logradouro=_str(row[14]),
        numero=_str(row[15]),
        complemento=_str(row[16]),
        bairro=_str(row[17]),
        cep=_str(row[18]),
        uf=_str(row[19]),
        codigo_municipio=_int(row[20]),
        ddd_telefone_1=_phone(row[21], row[22]),
        ddd_telefone_2=_phone(row[23], row[24]),
        ddd_fax=_phone(row[25], row[26]),
        email=_str(row[27]),
        situacao_especial=_str(row[28]),
        data_situacao_especial=_date(row[29]),
    )


def parse_partner(row: list[str]) -> tuple[str, PartnerRecord]:
    faixa = _int(row[10])
    return cnpj.normalize_base(row[0]), PartnerRecord(
        identificador_de_socio=_int(row[1]),
        nome_socio=row[2].strip(),
        cnpj_cpf_do_socio=row[3].strip(),
        codigo_qualificacao_socio=_int(row[4]),
        data_entrada_sociedade=_date(row[5]),
        codigo_pais=_int(row[6]),
        cpf_representante_legal=row[7].strip(),
        nome_representante_legal=row[8].strip(),
        codigo_qualificacao_representante_legal=_int(row[9]),
        codigo_faixa_etaria=faixa,
        faixa_etaria=FAIXA_ETARIA.get(faixa) if faixa is not None else None,
    )


def parse_taxes(row: list[str]) -> tuple[str, TaxRecord]:
    return cnpj.normalize_base(row[0]), TaxRecord(
        opcao_pelo_simples=_flag(row[1]),
        data_opcao_pelo_simples=_date(row[2]),
        data_exclusao_do_simples=_date(row[3]),
        opcao_pelo_mei=_flag(row[4]),
        data_opcao_pelo_mei=_date(row[5]),
        data_exclusao_do_mei=_date(row[6]),
    )


PARSERS: dict[SourceKind, Callable[[list[str]], tuple[str, BaseModel]]] = {
    SourceKind.BASE: parse_base,
    SourceKind.BRANCHES: parse_branch,
    SourceKind.PARTNERS: parse_partner,
    SourceKind.TAXES: parse_taxes,
}


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def _read_chunks(source, path: Path, columns: int, chunksize: int) -> Iterator[pd.DataFrame]:
    try:
        with pd.read_csv(
            source,
            sep=DELIMITER,
            quotechar='"',
            header=None,
            names=list(range(columns)),
            index_col=False,
            dtype=str,
            keep_default_na=False,
            encoding=ENCODING,
            chunksize=chunksize,
        ) as reader:
            yield from reader
    except pd.errors.EmptyDataError:
        return
    except pd.errors.ParserError as e:
        raise ValidationError(f"{path}: {e}") from e


def iter_chunks(
    path: str | Path,
    columns: int,
    chunksize: int = CHUNK_SIZE,
) -> Iterator[pd.DataFrame]:
    """
    Stream a plain or zipped registry file as DataFrames of ``columns`` string columns.

    Empty fields are ``""``; fields missing from a short row are NaN. The
    index counts data rows from 0 across chunks.
    """
    path = Path(path)
    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as archive:
            members = [m for m in archive.namelist() if not m.endswith("/")]
            if not members:
                raise ValidationError(f"{path} is an empty archive")
            with archive.open(members[0]) as fh:
                yield from _read_chunks(fh, path, columns, chunksize)
        return

    yield from _read_chunks(path, path, columns, chunksize)


def read_source(
    path: str | Path,
    kind: Optional[SourceKind] = None,
    limit: Optional[int] = None,
    chunksize: int = CHUNK_SIZE,
) -> Iterator[tuple[str, BaseModel]]:
    """
    Stream typed records from one registry file.

    Args:
        path: Plain CSV or zip archive
        kind: File kind; detected from the filename when omitted
        limit: Stop after this many records
        chunksize: Rows parsed by pandas at a time

    Yields:
        (key, record) pairs, in file order
    """
    kind = kind or detect_kind(path)
    if kind is None:
        raise ValidationError(f"cannot tell which registry file {path} is")
    parse = PARSERS[kind]
    expected = _COLUMNS[kind]

    count = 0
    for frame in iter_chunks(path, expected, chunksize):
        short = frame[expected - 1].isna()
        if short.any():
            index = short.idxmax()
            got = int(frame.loc[index].notna().sum())
            raise ValidationError(f"{path}:{index + 1}: expected {expected} columns, got {got}")

        for index, *row in frame.itertuples(index=True, name=None):
            if limit is not None and count >= limit:
                logger.debug(f"Read {count:,} {kind.value} records from {path} (limit)")
                return
            try:
                pair = parse(row)
            except ValidationError as e:
                raise ValidationError(f"{path}:{index + 1}: {e}") from e
            yield pair
            count += 1

    logger.debug(f"Read {count:,} {kind.value} records from {path}")


def read_base(path: str | Path, limit: Optional[int] = None) -> Iterator[tuple[str, BaseModel]]:
    return read_source(path, SourceKind.BASE, limit)


def read_branches(path: str | Path, limit: Optional[int] = None) -> Iterator[tuple[str, BaseModel]]:
    return read_source(path, SourceKind.BRANCHES, limit)


def read_partners(path: str | Path, limit: Optional[int] = None) -> Iterator[tuple[str, BaseModel]]:
    return read_source(path, SourceKind.PARTNERS, limit)


def read_taxes(path: str | Path, limit: Optional[int] = None) -> Iterator[tuple[str, BaseModel]]:
    return read_source(path, SourceKind.TAXES, limit)
