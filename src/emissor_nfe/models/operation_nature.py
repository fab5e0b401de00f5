from __future__ import annotations

from dataclasses import dataclass, field

from emissor_nfe.utils.formatters import first_present, parse_flag

# IBS/CBS header fields passed through from the nature onto the NF-e (tax reform)
REFORM_HEADER_FIELDS = (
    "ibs_cbs_situacao_tributaria",
    "ibs_cbs_classificacao_tributaria",
    "ibs_cbs_base_calculo",
    "ibs_uf_aliquota",
    "ibs_uf_valor",
    "ibs_mun_aliquota",
    "ibs_mun_valor",
    "ibs_valor_total",
    "cbs_aliquota",
    "cbs_valor",
)


@dataclass(frozen=True)
class OperationNature:
    """Why the goods move (sale, return, ...). Rules per tax kind are loaded separately."""

    id: int
    descricao: str = "Venda de mercadoria"
    info_adicionais: str = ""
    company_id: int | None = None  # None = available to every company
    regime_hint: str | None = None
    consumidor_final: bool | None = None
    indicador_presenca: str | None = None
    incluir_frete_base: bool = True
    indicador_intermediador: str | None = None
    cnpj_intermediador: str | None = None
    identificador_intermediador: str | None = None
    reform_fields: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict) -> OperationNature:
        empresa = first_present(d, "empresa", "company_id")
        intermediador = first_present(d, "indicadorIntermediador", "indicador_intermediador")
        presenca = first_present(d, "indicadorPresenca", "indicador_presenca")
        frete = parse_flag(first_present(d, "incluir_frete_base_ipi", "incluir_frete_base"))
        cnpj = d.get("cnpj_intermediador")
        ident = d.get("identificador_intermediador")
        regime = first_present(d, "cod_regimeTributario", "regime_tributario")
        return cls(
            id=int(d["id"]),
            descricao=str(d.get("descricao") or "Venda de mercadoria").strip(),
            info_adicionais=str(first_present(d, "infoAdicionais", "info_adicionais") or "").strip(),
            company_id=int(empresa) if empresa is not None else None,
            regime_hint=str(regime).strip() if regime is not None else None,
            consumidor_final=parse_flag(first_present(d, "consumidorFinal", "consumidor_final")),
            indicador_presenca=str(presenca).strip() if presenca is not None else None,
            incluir_frete_base=frete is not False,
            indicador_intermediador=str(intermediador).strip() if intermediador is not None else None,
            cnpj_intermediador=str(cnpj) if cnpj is not None else None,
            identificador_intermediador=str(ident) if ident is not None else None,
            reform_fields={k: d[k] for k in REFORM_HEADER_FIELDS if d.get(k) is not None},
        )
