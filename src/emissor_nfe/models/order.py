from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from emissor_nfe.utils.formatters import first_present, money, to_decimal

# IBS/CBS fields copied verbatim from the product onto the NF-e item (tax reform)
REFORM_ITEM_FIELDS = (
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


def _opt_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class OrderItem:
    """Order line enriched with the product's tax defaults."""

    id: int
    quantidade: Decimal
    valor_unitario: Decimal
    subtotal: Decimal
    descricao: str = "Item"
    codigo_produto: str | None = None
    unidade: str | None = None
    ncm: str | None = None
    cfop: str | None = None
    ean: str | None = None
    icms_origem: str = "0"
    icms_cst: str | None = None
    pis_cst: str | None = None
    cofins_cst: str | None = None
    pis_aliquota: Decimal | None = None
    cofins_aliquota: Decimal | None = None
    reform_fields: dict = field(default_factory=dict)

    @property
    def valor_bruto(self) -> Decimal:
        """Gross line value: quantity x unit price, rounded to cents."""
        return money(self.quantidade * self.valor_unitario)

    @classmethod
    def from_dict(cls, d: dict) -> OrderItem:
        produto = d.get("produto")
        product = produto if isinstance(produto, dict) else {}
        row = {**product, **{k: v for k, v in d.items() if k != "produto"}}
        quantidade = to_decimal(first_present(row, "quantidade", "qtd")) or Decimal(0)
        unit = to_decimal(first_present(row, "valorUnit", "valor_unitario")) or Decimal(0)
        subtotal = to_decimal(first_present(row, "subtotal", "valor_total"))
        code = first_present(row, "codigo_produto", "produto_id", "codigo")
        if code is None and produto is not None and not isinstance(produto, dict):
            code = produto
        return cls(
            id=int(row.get("id") or 0),
            quantidade=quantidade,
            valor_unitario=unit,
            subtotal=subtotal if subtotal is not None else money(quantidade * unit),
            descricao=_opt_text(first_present(row, "descricao", "nome")) or "Item",
            codigo_produto=_opt_text(code),
            unidade=_opt_text(row.get("unidade")),
            ncm=_opt_text(first_present(row, "codigo_ncm", "ncm")),
            cfop=_opt_text(row.get("cfop")),
            ean=_opt_text(first_present(row, "ean", "gtin")),
            icms_origem=_opt_text(row.get("icms_origem")) or "0",
            icms_cst=_opt_text(row.get("icms_situacao_tributaria")),
            pis_cst=_opt_text(row.get("pis_situacao_tributaria")),
            cofins_cst=_opt_text(row.get("cofins_situacao_tributaria")),
            pis_aliquota=to_decimal(row.get("pis_aliquota_porcentual")),
            cofins_aliquota=to_decimal(row.get("cofins_aliquota_porcentual")),
            reform_fields={k: row[k] for k in REFORM_ITEM_FIELDS if row.get(k) is not None},
        )


@dataclass(frozen=True)
class Order:
    """Sales order (pedido de venda) with its items."""

    id: int
    counterparty_id: int
    valor_total: Decimal
    valor_frete: Decimal = Decimal(0)
    valor_desconto: Decimal = Decimal(0)
    items: tuple[OrderItem, ...] = ()

    @property
    def valor_produtos(self) -> Decimal:
        return sum((i.subtotal for i in self.items), Decimal(0))

    @classmethod
    def from_dict(cls, d: dict) -> Order:
        items = tuple(OrderItem.from_dict(i) for i in d.get("items") or d.get("itens") or [])
        total = to_decimal(first_present(d, "totalPedido", "valor_total"))
        if total is None:
            total = sum((i.subtotal for i in items), Decimal(0))
        return cls(
            id=int(d["id"]),
            counterparty_id=int(first_present(d, "contatos_id", "cliente_id", "counterparty_id") or 0),
            valor_total=total,
            valor_frete=to_decimal(first_present(d, "totalFrete", "valor_frete")) or Decimal(0),
            valor_desconto=to_decimal(first_present(d, "totalDesconto", "valor_desconto"))
            or Decimal(0),
            items=items,
        )
