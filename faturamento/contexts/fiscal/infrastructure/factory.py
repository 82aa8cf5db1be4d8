from __future__ import annotations

from typing import Callable, Dict, Mapping

from faturamento.contexts.fiscal.domain.gateway import FiscalGateway
from faturamento.contexts.fiscal.infrastructure.bling_gateway import BlingGateway
from faturamento.contexts.fiscal.infrastructure.client import BlingHttpClient
from faturamento.contexts.fiscal.infrastructure.credentials import RepositoryCredentialStore, TokenProvider
from faturamento.contexts.fiscal.infrastructure.settings import BlingSettings
from faturamento.contexts.fiscal.infrastructure.simulator.deterministic_bling import SimulatedBlingGateway


_SIMULATORS: Dict[int, SimulatedBlingGateway] = {}


def _simulator_for(seed: int) -> SimulatedBlingGateway:
    simulator = _SIMULATORS.get(seed)
    if simulator is None:
        simulator = SimulatedBlingGateway(seed=seed)
        _SIMULATORS[seed] = simulator
    return simulator


def build_fiscal_gateway(app_config: Mapping, db_getter: Callable | None = None) -> FiscalGateway:
    settings = BlingSettings.from_mapping(app_config)
    if settings.mode == "mock":
        return _simulator_for(settings.simulator_seed)
    if settings.mode != "live":
        raise RuntimeError(f"BLING_MODE invalido: {settings.mode}")

    if db_getter is None:
        from faturamento.db import get_db

        db_getter = get_db
    http = BlingHttpClient(settings)
    store = RepositoryCredentialStore(settings, db_getter)
    return BlingGateway(http, TokenProvider(settings, store, http))


def reset_simulators_for_tests() -> None:
    _SIMULATORS.clear()
