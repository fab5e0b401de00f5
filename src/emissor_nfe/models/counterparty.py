from __future__ import annotations

from dataclasses import dataclass

from emissor_nfe.utils.formatters import first_present, only_digits, parse_flag

BRAZIL_NAMES = frozenset({"BRASIL", "BRAZIL", "BR", "1058"})

IE_CONTRIBUTOR = 1
IE_EXEMPT = 2
IE_NON_CONTRIBUTOR = 9


@dataclass(frozen=True)
class Counterparty:
    """Destination party (destinatário) of the NF-e."""

    id: int
    nome: str
    documento: str  # digits only: 11 = CPF, 14 = CNPJ
    inscricao_estadual: str
    logradouro: str
    numero: str
    bairro: str
    municipio: str
    uf: str
    cep: str
    pais: str = "Brasil"
    complemento: str | None = None
    telefone: str | None = None
    email: str | None = None
    consumidor_final: bool | None = None
    contribuinte_icms: bool | None = None
    ind_ie_dest: int | None = None

    @property
    def cpf(self) -> str | None:
        return self.documento if len(self.documento) == 11 else None

    @property
    def cnpj(self) -> str | None:
        return self.documento if len(self.documento) == 14 else None

    @property
    def is_foreign(self) -> bool:
        return self.pais.strip().upper() not in BRAZIL_NAMES

    @classmethod
    def from_dict(cls, d: dict) -> Counterparty:
        """Create a Counterparty from a raw contact row, accepting the historical column names."""
        nested = d.get("endereco")
        a = {**d, **nested} if isinstance(nested, dict) else d
        ind = first_present(d, "indIEDest", "ind_ie_dest")
        try:
            ind_ie_dest = int(ind) if ind is not None else None
        except (TypeError, ValueError):
            ind_ie_dest = None
        if ind_ie_dest not in (IE_CONTRIBUTOR, IE_EXEMPT, IE_NON_CONTRIBUTOR):
            ind_ie_dest = None
        name = first_present(d, "nome", "razao_social", "nome_fantasia")
        complemento = first_present(a, "complemento")
        return cls(
            id=int(first_present(d, "contato_id", "id") or 0),
            nome=str(name).strip() if name is not None else "",
            documento=only_digits(first_present(d, "cpf_cnpj", "cnpj", "cpf")),
            inscricao_estadual=str(first_present(d, "ie", "inscricao_estadual", "iE") or "").strip(),
            logradouro=str(first_present(a, "logradouro", "rua") or "").strip(),
            numero=str(first_present(a, "numero") or "S/N").strip(),
            bairro=str(first_present(a, "bairro") or "").strip(),
            municipio=str(first_present(a, "municipio", "cidade") or "").strip(),
            uf=str(first_present(a, "uf", "estado") or "").strip().upper(),
            cep=only_digits(first_present(a, "cep")),
            pais=str(first_present(a, "pais") or "Brasil").strip(),
            complemento=str(complemento).strip() if complemento is not None else None,
            telefone=first_present(d, "celular", "telefoneFixo", "telefone"),
            email=first_present(d, "email"),
            consumidor_final=parse_flag(first_present(d, "consumidorFinal", "consumidor_final")),
            contribuinte_icms=parse_flag(first_present(d, "contribuinte_icms")),
            ind_ie_dest=ind_ie_dest,
        )
