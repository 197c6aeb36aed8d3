"""Mapeamento de códigos de produto do ERP para planos da Olé TV.

Lookup puro sobre `product_plan_mappings`, com cache por integração
(`mapping_cache_ttl_s`). Escritas invalidam o cache da integração.
"""
from __future__ import annotations
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Callable, Iterable
from kink import di
from sqlalchemy import select, update
from ...core.logging import get_logger
from ...ports.interfaces import ProductDTO
from ...repo.models import ProductPlanMapping

log = get_logger()

@dataclass(frozen=True)
class MappedPlan:
    integration_code: str
    ole_plan_id: str
    ole_plan_name: str | None
    priority: int
    is_main_plan: bool

    def to_dict(self) -> dict:
        return asdict(self)

@dataclass
class ProductMappingResult:
    main_plan: MappedPlan | None = None
    additional_plans: list[MappedPlan] = field(default_factory=list)
    unmapped_codes: list[str] = field(default_factory=list)
    equipments: list[dict] = field(default_factory=list)


class ProductMapper:
    """Traduz produtos do webhook em plano principal + adicionais."""

    def __init__(self, session_factory=None, ttl_s: float = 300, clock: Callable[[], float] = time.monotonic):
        self.Session = session_factory or di["session_factory"]
        self.ttl_s = ttl_s
        self.clock = clock
        self._cache: dict[str, tuple[float, dict[str, MappedPlan]]] = {}
        self._lock = threading.Lock()

    # ---------- Cache ----------
    def _active(self, integration_id: str) -> dict[str, MappedPlan]:
        now = self.clock()
        with self._lock:
            hit = self._cache.get(integration_id)
            if hit and hit[0] > now:
                return hit[1]
        with self.Session() as s:
            rows = s.execute(
                select(ProductPlanMapping).where(
                    ProductPlanMapping.integration_id == integration_id,
                    ProductPlanMapping.is_active.is_(True),
                )
            ).scalars().all()
            plans = {r.integration_code: _to_plan(r) for r in rows}
        with self._lock:
            self._cache[integration_id] = (now + self.ttl_s, plans)
        return plans

    def invalidate(self, integration_id: str | None = None) -> None:
        with self._lock:
            if integration_id is None:
                self._cache.clear()
            else:
                self._cache.pop(integration_id, None)

    # ---------- Leitura ----------
    def map_products(self, integration_id: str, products: Iterable[ProductDTO]) -> ProductMappingResult:
        """Seleciona o plano principal de maior prioridade entre os produtos ativos (não demonstração)."""
        result = ProductMappingResult()
        active = [p for p in (products or []) if p.active and not p.demonstration]
        if not active:
            log.warning("mapping_no_active_products", integration_id=integration_id)
            return result
        codes = list(dict.fromkeys(p.code for p in active))
        plans = self._active(integration_id)
        mapped = sorted((plans[c] for c in codes if c in plans), key=lambda m: -m.priority)
        mains = [m for m in mapped if m.is_main_plan]
        if mains:
            result.main_plan = mains[0]
        result.additional_plans = [m for m in mapped if not m.is_main_plan]
        result.unmapped_codes = [c for c in codes if c not in plans]
        result.equipments = [
            {"tag": p.tag, "tag_id": p.tag_id, "integration_code": p.code} for p in active if p.tag
        ]
        if result.unmapped_codes:
            log.warning("mapping_unmapped_codes", integration_id=integration_id, codes=result.unmapped_codes)
        log.info(
            "mapping_resolved",
            integration_id=integration_id,
            main_plan=result.main_plan.ole_plan_id if result.main_plan else None,
            additional=len(result.additional_plans),
        )
        return result

    def get_plan_for_code(self, integration_id: str, integration_code: str) -> MappedPlan | None:
        return self._active(integration_id).get(integration_code)

    def should_upgrade(self, integration_id: str, current_code: str, new_code: str) -> bool:
        """True se o novo código tem prioridade maior que o atual."""
        plans = self._active(integration_id)
        current, new = plans.get(current_code), plans.get(new_code)
        if current is None or new is None:
            log.warning("mapping_upgrade_unknown_code", current=current_code, new=new_code)
            return False
        return new.priority > current.priority

    def list_mappings(self, integration_id: str) -> list[MappedPlan]:
        plans = self._active(integration_id).values()
        return sorted(plans, key=lambda m: (not m.is_main_plan, -m.priority, m.integration_code))

    # ---------- Escrita ----------
    def upsert_mapping(
        self,
        integration_id: str,
        integration_code: str,
        ole_plan_id: str,
        *,
        ole_plan_name: str | None = None,
        priority: int = 0,
        is_main_plan: bool = True,
        description: str | None = None,
    ) -> None:
        with self.Session() as s, s.begin():
            row = s.execute(
                select(ProductPlanMapping).where(
                    ProductPlanMapping.integration_id == integration_id,
                    ProductPlanMapping.integration_code == integration_code,
                )
            ).scalars().first()
            if row is None:
                row = ProductPlanMapping(integration_id=integration_id, integration_code=integration_code)
                s.add(row)
            row.ole_plan_id = str(ole_plan_id)
            row.ole_plan_name = ole_plan_name
            row.priority = priority
            row.is_main_plan = is_main_plan
            row.description = description
            row.is_active = True
        self.invalidate(integration_id)
        log.info("mapping_upserted", integration_id=integration_id, code=integration_code, plan_id=str(ole_plan_id))

    def disable_mapping(self, integration_id: str, integration_code: str) -> bool:
        """Desativa (soft delete); retorna False se o código não existe."""
        with self.Session() as s, s.begin():
            res = s.execute(
                update(ProductPlanMapping)
                .where(
                    ProductPlanMapping.integration_id == integration_id,
                    ProductPlanMapping.integration_code == integration_code,
                )
                .values(is_active=False)
            )
        self.invalidate(integration_id)
        ok = res.rowcount == 1
        if ok:
            log.info("mapping_disabled", integration_id=integration_id, code=integration_code)
        return ok


def _to_plan(r: ProductPlanMapping) -> MappedPlan:
    return MappedPlan(
        integration_code=r.integration_code,
        ole_plan_id=r.ole_plan_id,
        ole_plan_name=r.ole_plan_name,
        priority=r.priority,
        is_main_plan=r.is_main_plan,
    )
