# hometelemetry/services/container.py

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from hometelemetry.core.config import Settings, settings as default_settings
from hometelemetry.core.database import connect_database
from hometelemetry.models.series import UtilityType
from hometelemetry.services.backfill import BackfillOrchestrator
from hometelemetry.services.ecowitt_client import EcowittClient
from hometelemetry.services.glow_client import GlowClient
from hometelemetry.services.kraken_client import KrakenClient
from hometelemetry.services.meter_reconciler import MeterReconciler
from hometelemetry.services.mirror import MirrorSink, build_mirror
from hometelemetry.services.pipelines import (
    EnergyPipeline,
    SensorPipeline,
    UtilityResources,
    WaterPipeline,
)
from hometelemetry.services.poller import PollScheduler
from hometelemetry.services.source_client import SourceClient
from hometelemetry.services.store import TelemetryStore

logger = logging.getLogger("telemetry.services")


class Services:
    """Everything the API and the scheduler share for the life of the process."""

    def __init__(
        self,
        store: TelemetryStore,
        mirror: MirrorSink,
        scheduler: PollScheduler,
        reconciler: MeterReconciler,
        clients: Optional[List[SourceClient]] = None,
        backfills: Optional[Dict[str, BackfillOrchestrator]] = None,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.scheduler = scheduler
        self.reconciler = reconciler
        self.clients = clients or []
        self.backfills = backfills or {}

    async def close(self) -> None:
        self.scheduler.shutdown()
        # in-flight mirror pushes are abandoned, in-flight writes finish
        await self.store.close()
        for client in self.clients:
            await client.aclose()
        await self.mirror.aclose()


def _glow_resources(cfg: Settings) -> Dict[UtilityType, UtilityResources]:
    resources = {
        UtilityType.ELECTRICITY: UtilityResources(
            consumption=cfg.GLOW_ELECTRICITY_RESOURCE_ID,
            cost=cfg.GLOW_ELECTRICITY_COST_RESOURCE_ID,
        )
    }
    if cfg.GLOW_GAS_RESOURCE_ID:
        resources[UtilityType.GAS] = UtilityResources(
            consumption=cfg.GLOW_GAS_RESOURCE_ID,
            cost=cfg.GLOW_GAS_COST_RESOURCE_ID,
        )
    return resources


async def build_services(cfg: Optional[Settings] = None) -> Services:
    cfg = cfg or default_settings
    store = TelemetryStore(await connect_database(cfg.DATABASE_URL))
    mirror = build_mirror(cfg)
    scheduler = PollScheduler(timezone_name=cfg.TIMEZONE)
    clients: List[SourceClient] = []
    backfills: Dict[str, BackfillOrchestrator] = {}

    if cfg.ecowitt_enabled():
        ecowitt = EcowittClient(
            cfg.ECOWITT_APPLICATION_KEY,
            cfg.ECOWITT_API_KEY,
            cfg.ECOWITT_MAC,
            base_url=cfg.ECOWITT_API_URL,
            room_names=cfg.get_room_names(),
        )
        clients.append(ecowitt)
        scheduler.register(SensorPipeline(ecowitt, store, mirror), cfg.ECOWITT_POLL_INTERVAL_SECONDS)
    else:
        logger.warning("Ecowitt credentials missing; sensor polling disabled")

    if cfg.glow_enabled():
        glow = GlowClient(
            cfg.GLOW_USERNAME,
            cfg.GLOW_PASSWORD,
            application_id=cfg.GLOW_APPLICATION_ID,
            base_url=cfg.GLOW_API_URL,
        )
        clients.append(glow)
        energy = EnergyPipeline(
            glow,
            store,
            mirror,
            resources=_glow_resources(cfg),
            lookback_days=cfg.GLOW_LOOKBACK_DAYS,
            chunk_days=cfg.GLOW_CHUNK_DAYS,
        )
        scheduler.register(energy, cfg.GLOW_POLL_INTERVAL_SECONDS)
        backfills[energy.name] = BackfillOrchestrator(
            energy, max_days=cfg.BACKFILL_MAX_DAYS, lock=scheduler.lock_for(energy.name)
        )
    else:
        logger.warning("Glow credentials missing; energy polling disabled")

    if cfg.kraken_enabled():
        kraken = KrakenClient(cfg.KRAKEN_API_URL, cfg.KRAKEN_EMAIL, cfg.KRAKEN_PASSWORD)
        clients.append(kraken)
        water = WaterPipeline(
            kraken,
            store,
            mirror,
            meter_serial=cfg.WATER_METER_SERIAL,
            lookback_days=cfg.WATER_LOOKBACK_DAYS,
            chunk_days=cfg.WATER_CHUNK_DAYS,
        )
        scheduler.register(water, cfg.WATER_POLL_INTERVAL_SECONDS)
        backfills[water.name] = BackfillOrchestrator(
            water, max_days=cfg.BACKFILL_MAX_DAYS, lock=scheduler.lock_for(water.name)
        )
    else:
        logger.warning("Kraken credentials or water meter serial missing; water polling disabled")

    reconciler = MeterReconciler(store, meter_serial=cfg.WATER_METER_SERIAL, mirror=mirror)
    return Services(store, mirror, scheduler, reconciler, clients=clients, backfills=backfills)


# ----------------------------------------------------------------------
# Process-wide instance
# ----------------------------------------------------------------------
_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services not initialized. Call build_services() at startup.")
    return _services
