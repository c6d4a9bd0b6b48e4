"""
Income bracket (quotient familial) resolution with a TTL cache
"""
import threading
import time
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from membership_fees.components.contracts import (CalcKindLiteral,
                                                   IncomeBracketResolution)
from membership_fees.core.config import get_settings
from membership_fees.core.logging_config import LoggingConfig
from membership_fees.core.metrics import income_bracket_cache_entries
from membership_fees.core.utils import percentage_of, to_money
from membership_fees.models.income_bracket import (IncomeBracket,
                                                   IncomeBracketConfig)

logger = LoggingConfig.get_logger(__name__)


class IncomeBracketSnapshot(BaseModel):
    id: int
    label: str
    min_value: int
    max_value: Optional[int] = None
    calc_kind: CalcKindLiteral
    value: Decimal
    age_values: Dict[int, Tuple[CalcKindLiteral, Decimal]] = Field(default_factory=dict)

    def contains(self, income_quotient: float) -> bool:
        if income_quotient < self.min_value:
            return False
        return self.max_value is None or income_quotient <= self.max_value


class IncomeScaleSnapshot(BaseModel):
    """Detached copy of an active income bracket configuration"""
    config_id: int
    code: str
    brackets: List[IncomeBracketSnapshot] = Field(default_factory=list)

    def find(self, income_quotient: float) -> Optional[IncomeBracketSnapshot]:
        for bracket in self.brackets:
            if bracket.contains(income_quotient):
                return bracket
        return None


class IncomeBracketCache:
    """
    Process-local TTL cache of income scales keyed by structure

    Entries are immutable snapshots, safe to share between sessions and
    threads. Call invalidate() after editing a configuration.
    """

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().income_bracket_cache_ttl_seconds
        self._clock = clock
        self._entries: Dict[Optional[int], Tuple[float, Optional[IncomeScaleSnapshot]]] = {}
        self._lock = threading.Lock()

    def get(self, structure_id: Optional[int]) -> Tuple[bool, Optional[IncomeScaleSnapshot]]:
        with self._lock:
            entry = self._entries.get(structure_id)
            if entry is None:
                return False, None
            stored_at, scale = entry
            # ttl 0 keeps entries until invalidate()
            if self.ttl_seconds and self._clock() - stored_at > self.ttl_seconds:
                del self._entries[structure_id]
                income_bracket_cache_entries.set(len(self._entries))
                return False, None
            return True, scale

    def put(self, structure_id: Optional[int], scale: Optional[IncomeScaleSnapshot]) -> None:
        with self._lock:
            self._entries[structure_id] = (self._clock(), scale)
            income_bracket_cache_entries.set(len(self._entries))

    def invalidate(self, structure_id: Optional[int] = None) -> None:
        """Drop one structure's entry, or everything when structure_id is None"""
        with self._lock:
            if structure_id is None:
                self._entries.clear()
            else:
                self._entries.pop(structure_id, None)
            income_bracket_cache_entries.set(len(self._entries))
        logger.info("Income bracket cache invalidated", extra={"structure_id": structure_id})


class QuotientFamilialResolver:
    """
    Turns a catalog amount into the income-adjusted base amount:
    - fixed bracket value replaces the amount
    - percentage bracket value is a percentage of the amount
    - a per-age-bracket value, when configured, takes precedence
    Missing income quotient or no matching bracket leaves the amount unchanged.

    Without a cache every call reads the configuration from the database.
    """

    def __init__(self, db: Session, cache: Optional[IncomeBracketCache] = None):
        self.db = db
        self.cache = cache

    def get_scale(self, structure_id: Optional[int] = None) -> Optional[IncomeScaleSnapshot]:
        """Active income scale for a structure (structure-specific first, then global)"""
        if self.cache is not None:
            hit, scale = self.cache.get(structure_id)
            if hit:
                return scale

        scale = self._load_scale(structure_id)
        if self.cache is not None:
            self.cache.put(structure_id, scale)
        return scale

    def _load_scale(self, structure_id: Optional[int]) -> Optional[IncomeScaleSnapshot]:
        query = self.db.query(IncomeBracketConfig).options(
            selectinload(IncomeBracketConfig.brackets).selectinload(IncomeBracket.age_values)
        ).filter(IncomeBracketConfig.active.is_(True))
        if structure_id is not None:
            query = query.filter(or_(
                IncomeBracketConfig.structure_id == structure_id,
                IncomeBracketConfig.structure_id.is_(None)
            ))
        else:
            query = query.filter(IncomeBracketConfig.structure_id.is_(None))

        configs = query.all()
        if not configs:
            return None
        # structure-specific before global, default before others
        configs.sort(key=lambda c: (c.structure_id is None, not c.is_default, c.id))
        config = configs[0]

        return IncomeScaleSnapshot(
            config_id=config.id,
            code=config.code,
            brackets=[
                IncomeBracketSnapshot(
                    id=b.id,
                    label=b.label,
                    min_value=b.min_value or 0,
                    max_value=b.max_value,
                    calc_kind=b.calc_kind,
                    value=b.value,
                    age_values={av.age_bracket_id: (av.calc_kind, av.value) for av in b.age_values},
                )
                for b in config.brackets if b.active
            ],
        )

    def resolve(
        self,
        income_quotient: Optional[float],
        catalog_amount: Decimal,
        age_bracket_id: Optional[int] = None,
        structure_id: Optional[int] = None,
    ) -> Tuple[Decimal, Optional[IncomeBracketResolution]]:
        """
        Income-adjusted base amount

        Returns:
            (base amount, resolution or None when the amount is unchanged)
        """
        amount = to_money(catalog_amount)
        if income_quotient is None:
            return amount, None

        scale = self.get_scale(structure_id)
        if scale is None:
            return amount, None

        bracket = scale.find(income_quotient)
        if bracket is None:
            logger.debug(
                "No income bracket for quotient",
                extra={"income_quotient": income_quotient, "config_id": scale.config_id}
            )
            return amount, None

        calc_kind, value = bracket.calc_kind, bracket.value
        age_specific = False
        if age_bracket_id is not None and age_bracket_id in bracket.age_values:
            calc_kind, value = bracket.age_values[age_bracket_id]
            age_specific = True

        if calc_kind == "percentage":
            adjusted = percentage_of(amount, value)
        else:
            adjusted = to_money(value)

        return adjusted, IncomeBracketResolution(
            config_id=scale.config_id,
            bracket_id=bracket.id,
            label=bracket.label,
            calc_kind=calc_kind,
            value=value,
            amount=adjusted,
            age_specific=age_specific,
        )
