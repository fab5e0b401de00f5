from __future__ import annotations

from dataclasses import dataclass

from emissor_nfe.utils.formatters import first_present, only_digits, parse_flag

REGIME_SIMPLIFIED = "1"  # Simples Nacional
REGIME_SIMPLIFIED_EXCESS = "2"  # Simples Nacional, excesso de sublimite
REGIME_NORMAL = "3"

REGIMES = (REGIME_SIMPLIFIED, REGIME_SIMPLIFIED_EXCESS, REGIME_NORMAL)


def _address(d: dict) -> dict:
    """Flatten a nested ``endereco`` mapping over the row's own address columns."""
    nested = d.get("endereco")
    if isinstance(nested, dict):
        return {**d, **nested}
    return d


def _text(value: object, default: str = "") -> str:
    return default if value is None else str(value).strip()


@dataclass(frozen=True)
class Company:
    """Emitter (emitente): the company issuing the NF-e.

    The tax regime belongs to the company, never to the order.
    """

    id: int
    cnpj: str
    razao_social: str
    inscricao_estadual: str
    regime: str  # "" when not configured
    logradouro: str
    numero: str
    bairro: str
    municipio: str
    uf: str
    cep: str
    nome_fantasia: str | None = None
    telefone: str | None = None
    regime_especial: bool = False
    token_homologacao: str | None = None
    token_producao: str | None = None

    def token_for(self, env: str) -> str | None:
        token = self.token_producao if env == "producao" else self.token_homologacao
        if token is None or not token.strip():
            return None
        return token.strip()

    @classmethod
    def from_dict(cls, d: dict) -> Company:
        """Create a Company from a raw row, accepting the historical column names."""
        a = _address(d)
        regime = first_present(d, "codRegime_tributario", "regime_tributario", "regime")
        return cls(
            id=int(d["id"]),
            cnpj=only_digits(d.get("cnpj")),
            razao_social=_text(first_present(d, "nome", "razao_social")),
            inscricao_estadual=_text(first_present(d, "iE", "inscricao_estadual", "ie")),
            regime=_text(regime),
            logradouro=_text(first_present(a, "logradouro", "rua")),
            numero=_text(first_present(a, "numero"), "S/N"),
            bairro=_text(first_present(a, "bairro")),
            municipio=_text(first_present(a, "municipio", "cidade")),
            uf=_text(first_present(a, "uf", "estado")).upper(),
            cep=only_digits(first_present(a, "cep")),
            nome_fantasia=first_present(d, "nomeFantasia", "nome_fantasia"),
            telefone=first_present(d, "telefone", "fone"),
            regime_especial=bool(parse_flag(first_present(d, "tem_regime_especial", "regime_especial"))),
            token_homologacao=first_present(d, "tokenHomologacao", "token_homologacao"),
            token_producao=first_present(d, "tokenProducao", "token_producao"),
        )
