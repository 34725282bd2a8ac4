"""
Pydantic models for registry records, consolidated documents and search.

Nullable registry fields are Optional: the source files distinguish an
unknown value from zero, and so do these models.
"""

from typing import Any, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Cnae(BaseModel):
    """Economic activity code (CNAE) with its optional description."""
    codigo: int
    descricao: Optional[str] = None


class BaseRecord(BaseModel):
    """Company-level facts shared by every branch of a base CNPJ (EMPRECSV)."""
    razao_social: Optional[str] = None
    codigo_natureza_juridica: Optional[int] = None
    qualificacao_do_responsavel: Optional[int] = None
    capital_social: Optional[float] = None
    codigo_porte: Optional[int] = None
    porte: Optional[str] = None
    ente_federativo_responsavel: Optional[str] = None


class BranchRecord(BaseModel):
    """
    Facts about one establishment (ESTABELE), keyed by the full CNPJ.

    Carries registration status, founding date, activities and the
    address of a head office or branch.
    """
    cnpj: str
    identificador_matriz_filial: Optional[int] = None
    descricao_identificador_matriz_filial: Optional[str] = None
    nome_fantasia: Optional[str] = None
    situacao_cadastral: Optional[int] = None
    descricao_situacao_cadastral: Optional[str] = None
    data_situacao_cadastral: Optional[str] = None
    motivo_situacao_cadastral: Optional[int] = None
    nome_cidade_no_exterior: Optional[str] = None
    codigo_pais: Optional[int] = None
    data_inicio_atividade: Optional[str] = None
    cnae_fiscal: Optional[int] = None
    cnaes_secundarios: list[Cnae] = Field(default_factory=list)
    descricao_tipo_de_logradouro: Optional[str] = None
    logradouro: Optional[str] = None
    numero: Optional[str] = None
    complemento: Optional[str] = None
    bairro: Optional[str] = None
    cep: Optional[str] = None
    uf: Optional[str] = None
    codigo_municipio: Optional[int] = None
    ddd_telefone_1: Optional[str] = None
    ddd_telefone_2: Optional[str] = None
    ddd_fax: Optional[str] = None
    email: Optional[str] = None
    situacao_especial: Optional[str] = None
    data_situacao_especial: Optional[str] = None


class PartnerRecord(BaseModel):
    """One partner or administrator of a company (SOCIOCSV)."""
    identificador_de_socio: Optional[int] = None
    nome_socio: str = ""
    cnpj_cpf_do_socio: str = ""
    codigo_qualificacao_socio: Optional[int] = None
    qualificacao_socio: Optional[str] = None
    data_entrada_sociedade: Optional[str] = None
    codigo_pais: Optional[int] = None
    pais: Optional[str] = None
    cpf_representante_legal: str = ""
    nome_representante_legal: str = ""
    codigo_qualificacao_representante_legal: Optional[int] = None
    qualificacao_representante_legal: Optional[str] = None
    codigo_faixa_etaria: Optional[int] = None
    faixa_etaria: Optional[str] = None


class TaxRecord(BaseModel):
    """Simplified tax regime (Simples Nacional / MEI) enrollment (SIMPLES)."""
    opcao_pelo_simples: Optional[bool] = None
    data_opcao_pelo_simples: Optional[str] = None
    data_exclusao_do_simples: Optional[str] = None
    opcao_pelo_mei: Optional[bool] = None
    data_opcao_pelo_mei: Optional[str] = None
    data_exclusao_do_mei: Optional[str] = None


def to_bytes(record: BaseModel) -> bytes:
    """Serialize a record for the staging store."""
    return orjson.dumps(record.model_dump(mode="json"))


class ConsolidatedCompany(BranchRecord, BaseRecord, TaxRecord):
    """
    Final document for one full CNPJ: branch, base and tax facts plus the
    ordered partner list (``qsa``).
    """
    model_config = ConfigDict(frozen=True)

    qsa: list[PartnerRecord] = Field(default_factory=list)

    @classmethod
    def assemble(
        cls,
        cnpj: str,
        base: BaseRecord,
        partners: list[PartnerRecord],
        taxes: Optional[TaxRecord] = None,
        branch: Optional[BranchRecord] = None,
    ) -> "ConsolidatedCompany":
        """Join the staged facets of one company into its final document."""
        data: dict[str, Any] = {}
        if branch is not None:
            data.update(branch.model_dump())
        else:
            data["identificador_matriz_filial"] = 1
            data["descricao_identificador_matriz_filial"] = "MATRIZ"
        data.update(base.model_dump())
        if taxes is not None:
            data.update(taxes.model_dump())
        data["cnpj"] = cnpj
        data["qsa"] = partners
        return cls(**data)

    def to_json(self) -> str:
        return orjson.dumps(self.model_dump(mode="json")).decode()

    def to_row(self) -> tuple[str, str]:
        """(id, json) pair as expected by the bulk loader."""
        return self.cnpj, self.to_json()


class SearchQuery(BaseModel):
    """Filters and keyset cursor for company search."""
    uf: list[str] = Field(default_factory=list)
    cnae_fiscal: list[int] = Field(default_factory=list)
    cnae: list[int] = Field(default_factory=list)
    cnpf: list[str] = Field(default_factory=list)
    cursor: Optional[int] = None
    limit: int = Field(default=20, ge=1, le=1000)

    @field_validator("uf")
    @classmethod
    def _upper_uf(cls, v: list[str]) -> list[str]:
        return [u.strip().upper() for u in v if u.strip()]

    @field_validator("cnpf")
    @classmethod
    def _strip_cnpf(cls, v: list[str]) -> list[str]:
        return [c.strip() for c in v if c.strip()]

    @property
    def is_empty(self) -> bool:
        return not (self.uf or self.cnae_fiscal or self.cnae or self.cnpf)


class Page(BaseModel):
    """One page of search results; ``cursor`` feeds the next request."""
    data: list[dict[str, Any]] = Field(default_factory=list)
    cursor: Optional[str] = None
