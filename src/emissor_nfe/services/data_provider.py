"""Read-only lookups over the YAML record store in the config directory.

Layout::

    companies/<id>.yaml
    counterparties/<id>.yaml
    natures/<id>.yaml        # header plus rule lists keyed by tax kind
    orders/<id>.yaml         # header plus ``items``

Raw rows are normalized into the frozen models here, once.
"""

from __future__ import annotations

import logging
from pathlib import Path

from emissor_nfe.config import get_config_dir, load_yaml
from emissor_nfe.models.company import Company
from emissor_nfe.models.counterparty import Counterparty
from emissor_nfe.models.operation_nature import OperationNature
from emissor_nfe.models.order import Order
from emissor_nfe.models.tax_rule import TaxKind, TaxRule, rule_from_dict

logger = logging.getLogger(__name__)


def _record_path(collection: str, record_id: int | str) -> Path:
    return get_config_dir() / collection / f"{record_id}.yaml"


def _load_record(collection: str, record_id: int | str) -> dict | None:
    path = _record_path(collection, record_id)
    if not path.exists():
        logger.debug("%s/%s not found", collection, record_id)
        return None
    data = load_yaml(path)
    data.setdefault("id", record_id)
    return data


def list_ids(collection: str) -> list[str]:
    """Return sorted record ids (YAML file stems) of *collection*."""
    directory = get_config_dir() / collection
    if not directory.exists():
        return []
    return sorted(f.stem for f in directory.glob("*.yaml"))


def get_company(company_id: int) -> Company | None:
    data = _load_record("companies", company_id)
    return Company.from_dict(data) if data is not None else None


def get_counterparty(counterparty_id: int) -> Counterparty | None:
    data = _load_record("counterparties", counterparty_id)
    return Counterparty.from_dict(data) if data is not None else None


def get_nature(nature_id: int) -> OperationNature | None:
    data = _load_record("natures", nature_id)
    return OperationNature.from_dict(data) if data is not None else None


def get_order(order_id: int) -> Order | None:
    """Order with its items, each enriched with the product tax defaults it carries."""
    data = _load_record("orders", order_id)
    return Order.from_dict(data) if data is not None else None


def get_rules(nature_id: int, kind: TaxKind | str) -> list[TaxRule]:
    """All rules of *kind* attached to the operation nature. Missing nature → empty list."""
    kind = TaxKind(kind)
    data = _load_record("natures", nature_id)
    if data is None:
        return []
    rules = (data.get("regras") or data).get(kind.value) or []
    if isinstance(rules, dict):
        rules = [rules]
    return [rule_from_dict(kind, {"naturezaRef": nature_id, **r}) for r in rules]
