"""PredictorRuntime: Wires the components and runs the long-lived service.

``serve`` runs four concurrent loops in one event loop:
    - TickIngestor: backfill, then poll and flush trades
    - SampleRecorder: append OracleSamples for new transmissions
    - Calibration: startup fit, then the CalibrationScheduler; its worker
      threads submit history fetches back to this loop
    - The HTTP query surface (uvicorn)
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from .Aggregator import Aggregator
from .ApiServer import create_app
from .CalibrationEngine import CalibrationEngine, CalibrationScheduler
from .ChainReader import ChainReader
from .CoverageEnricher import CoverageEnricher
from .OracleAdapters import OracleAdapterRegistry
from .PredictionService import PredictionService
from .PredictorConfig import PredictorConfig
from .Records import OracleConfig
from .SampleRecorder import SampleRecorder
from .TickIngestor import TickIngestor
from .TickStore import TickStore

logger = logging.getLogger(__name__)


class PredictorRuntime:
    """All components built from one configuration.

    :ivar config: Resolved configuration.
    :ivar store: Shared store handle.
    """

    def __init__(self, config: PredictorConfig, store: TickStore | None = None) -> None:
        self.config = config
        self.store = store or TickStore(config.database_url)
        self.store.create_tables()
        self.aggregator = Aggregator(self.store, config.aggregator)
        self.registry = OracleAdapterRegistry.from_config(config.oracles)
        self.reader = ChainReader(
            config.rpc,
            retry=config.retry,
            chunk_blocks=config.calibration.log_chunk_blocks,
        )
        self.enricher = CoverageEnricher(self.store, self.aggregator, config)
        self.calibration = CalibrationEngine(
            self.store,
            self.aggregator,
            self.registry,
            config.calibration,
            sources=list(config.default_weights()),
            reader=self.reader,
            enricher=self.enricher,
        )
        self.scheduler = CalibrationScheduler(self.calibration, self.store)
        self.recorder = SampleRecorder(self.store, self.aggregator, self.registry, self.reader)
        self.predictions = PredictionService(
            self.store, self.aggregator, self.registry, config, reader=self.reader
        )

    def seed_oracles(self) -> int:
        """Insert configured oracle thresholds that are not stored yet."""
        return self.store.seed_oracle_configs(
            [
                OracleConfig(
                    chain_id=o.chain_id,
                    oracle_addr=o.address,
                    heartbeat_seconds=o.heartbeat_seconds,
                    deviation_bps=o.deviation_bps,
                    decimals=o.decimals,
                    scale_factor=o.scale_factor,
                )
                for o in self.config.oracles
            ]
        )

    def ingestor(self) -> TickIngestor:
        return TickIngestor(self.store, self.aggregator, self.config)

    async def _calibration_loop(self, ingestor: TickIngestor) -> None:
        await ingestor.backfilled.wait()
        self.enricher.loop = asyncio.get_running_loop()
        try:
            await asyncio.to_thread(self.calibration.run_all)
        except Exception as e:
            logger.error(f"Startup calibration failed: {e!r}")
        self.scheduler.prime()
        await self.scheduler.run()

    async def serve(self) -> None:
        """Run ingestion, sample recording, calibration and the API until cancelled."""
        self.seed_oracles()
        app = create_app(self.predictions)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=self.config.service.host,
                port=self.config.service.port,
                log_level="info",
            )
        )
        logger.info(
            f"Serving on {self.config.service.host}:{self.config.service.port}"
        )
        ingestor = self.ingestor()
        await asyncio.gather(
            ingestor.run(),
            self.recorder.run(),
            self._calibration_loop(ingestor),
            server.serve(),
        )
