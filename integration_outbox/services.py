from __future__ import annotations

from functools import lru_cache

from .adapters import AdapterRegistry, build_default_registry
from .dispatch import DispatchScheduler
from .rate_limits import RateLimitTable, load_rate_limit_table
from .reconcile import ReconciliationSweeper


@lru_cache(maxsize=1)
def get_rate_limits() -> RateLimitTable:
    return load_rate_limit_table()


@lru_cache(maxsize=1)
def get_adapter_registry() -> AdapterRegistry:
    return build_default_registry(get_rate_limits().integrations())


def get_scheduler() -> DispatchScheduler:
    return DispatchScheduler(get_rate_limits(), get_adapter_registry())


def get_sweeper() -> ReconciliationSweeper:
    return ReconciliationSweeper(get_rate_limits())
