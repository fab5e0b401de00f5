from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from emissor_nfe.models.tax_rule import (
    IcmsRule,
    IpiRule,
    ReformRule,
    TaxKind,
    TaxRule,
    WithholdingRule,
)
from emissor_nfe.services import data_provider
from emissor_nfe.services.exceptions import TaxRuleNotFoundError

logger = logging.getLogger(__name__)

ANY_SENTINELS = frozenset({"qualquer", "any"})

_SEPARATORS = re.compile(r"[,\s]+")


def is_any(destinations: str | None) -> bool:
    return destinations is not None and destinations.strip().lower() in ANY_SENTINELS


def destinations_match(destinations: str | None, uf: str) -> bool:
    """True if the comma/space separated filter lists *uf* (case-insensitive)."""
    if not destinations or not destinations.strip() or not uf:
        return False
    target = uf.strip().upper()
    return target in {p.upper() for p in _SEPARATORS.split(destinations.strip()) if p}


def pick_rule(rules: Iterable[TaxRule], uf: str) -> TaxRule | None:
    """Explicit state match first, then the ``qualquer`` rule, else None."""
    rules = list(rules)
    for rule in rules:
        if destinations_match(rule.destinations, uf):
            return rule
    for rule in rules:
        if is_any(rule.destinations):
            return rule
    return None


def resolve(kind: TaxKind | str, nature_id: int, destination_uf: str) -> TaxRule | None:
    """Single applicable rule of *kind* for the nature and destination state."""
    kind = TaxKind(kind)
    rule = pick_rule(data_provider.get_rules(nature_id, kind), destination_uf)
    if rule is None:
        logger.debug("No %s rule for nature %s / UF %s", kind.value, nature_id, destination_uf)
    return rule


@dataclass(frozen=True)
class ResolvedRules:
    """One rule (or None) per tax kind, already filtered by destination."""

    icms: IcmsRule | None = None
    pis: TaxRule | None = None
    cofins: TaxRule | None = None
    ipi: IpiRule | None = None
    withholding: WithholdingRule | None = None
    is_: ReformRule | None = None
    ibs: ReformRule | None = None
    cbs: ReformRule | None = None


def resolve_rules(nature_id: int, destination_uf: str, *, require_icms: bool = True) -> ResolvedRules:
    """Resolve every tax kind. A missing ICMS rule is a domain error; the rest are optional."""
    found = {kind: resolve(kind, nature_id, destination_uf) for kind in TaxKind}
    if require_icms and found[TaxKind.ICMS] is None:
        raise TaxRuleNotFoundError(TaxKind.ICMS.value, nature_id, destination_uf)
    return ResolvedRules(
        icms=found[TaxKind.ICMS],
        pis=found[TaxKind.PIS],
        cofins=found[TaxKind.COFINS],
        ipi=found[TaxKind.IPI],
        withholding=found[TaxKind.WITHHOLDING],
        is_=found[TaxKind.IS],
        ibs=found[TaxKind.IBS],
        cbs=found[TaxKind.CBS],
    )
