"""Main daemon process for jotx."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import psutil
from aiohttp import web
from loguru import logger

from .. import __version__
from .answer import AnswerComposer
from .api import create_api_app
from .bus import EventBus
from .capture import CapturePipeline
from .config import Config, PrivacyConfig, SearchConfig, Settings, default_config_path
from .config_store import ConfigSnapshot, ConfigStore
from .indexers import EmbeddingProvider, IndexWorker, VectorIndex, create_embedder
from .llm import OllamaClient
from .models import Answer, CaptureOutcome, SearchMode, SearchResponse, SourceType, utcnow
from .search import RetrievalEngine
from .storage import EntryStore


class JotxDaemon:
    """
    Wires the core together and exposes its command surface:

        capture, search, ask, get/save privacy config, get/save settings,
        get/save search config,
        clean_data
    """

    def __init__(
        self,
        config: Config,
        config_path: Optional[Path] = None,
        embedder: Optional[EmbeddingProvider] = None,
        llm_client: Optional[OllamaClient] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.start_time = utcnow()
        self.config_store = ConfigStore(config, config_path)
        self.event_bus = event_bus or EventBus()

        self.store = EntryStore(config.db_path)
        self.embedder = embedder or create_embedder(config.embedding)
        self.index = VectorIndex()
        self.worker = IndexWorker(self.store, self.index, self.embedder, self.config_store, self.event_bus)
        self.pipeline = CapturePipeline(self.store, self.index, self.worker, self.config_store, self.event_bus)
        self.engine = RetrievalEngine(self.store, self.index, self.embedder, self.config_store, self.event_bus)
        self.composer = AnswerComposer(self.engine, self.config_store, llm_client, self.event_bus)

        self.stats = {
            "capture_count": 0,
            "search_count": 0,
            "ask_count": 0,
        }

        self.api_app = None
        self.api_runner = None
        self.api_site = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._shutdown = asyncio.Event()
        self._stopped = False

    async def start(self, serve_api: bool = True) -> None:
        logger.info("Starting jotx daemon...")
        await self.event_bus.start()
        await self.worker.rebuild()
        await self.worker.start()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        if serve_api:
            await self._start_api()
        logger.info("jotx daemon started successfully")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping jotx daemon...")

        if self.api_site:
            await self.api_site.stop()
        if self.api_runner:
            await self.api_runner.cleanup()

        if self._maintenance_task:
            self._maintenance_task.cancel()
            await asyncio.gather(self._maintenance_task, return_exceptions=True)

        await self.worker.stop()
        await self.composer.close()
        await self.event_bus.stop()
        self.store.close()
        self._shutdown.set()
        logger.info("jotx daemon stopped")

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def wait_closed(self) -> None:
        await self._shutdown.wait()

    async def _start_api(self) -> None:
        api = self.config_store.snapshot().config.api
        self.api_app = create_api_app(self)
        self.api_runner = web.AppRunner(self.api_app)
        await self.api_runner.setup()
        self.api_site = web.TCPSite(self.api_runner, api.host, api.port)
        await self.api_site.start()
        logger.info(f"API server started on http://{api.host}:{api.port}")

    async def _maintenance_loop(self) -> None:
        interval_days = self.config_store.snapshot().config.storage.maintenance_interval_days
        if interval_days <= 0:
            return
        while True:
            await asyncio.sleep(interval_days * 86400)
            try:
                await asyncio.to_thread(self.store.optimize)
            except Exception as e:
                logger.error(f"Database maintenance failed: {e}")

    # Command surface

    async def capture(
        self,
        content: str,
        source_type: Union[SourceType, str],
        context: Optional[Dict[str, Any]] = None,
    ) -> CaptureOutcome:
        self.stats["capture_count"] += 1
        return await self.pipeline.capture(content, source_type, context)

    async def search(
        self,
        query: str,
        mode: Union[SearchMode, str] = SearchMode.AUTO,
        filters: Optional[Dict[str, Any]] = None,
    ) -> SearchResponse:
        """
        ``filters`` may contain ``sources``, ``limit``, ``case_sensitive``,
        ``fuzzy`` and ``cwd``.
        """
        filters = filters or {}
        self.stats["search_count"] += 1
        return await self.engine.search(
            query,
            mode,
            sources=filters.get("sources"),
            limit=filters.get("limit"),
            case_sensitive=filters.get("case_sensitive"),
            fuzzy=filters.get("fuzzy"),
            cwd=filters.get("cwd"),
        )

    async def ask(self, question: str, timeout: Optional[float] = None) -> Answer:
        self.stats["ask_count"] += 1
        return await self.composer.ask(question, timeout=timeout)

    def get_privacy_config(self) -> PrivacyConfig:
        return self.config_store.get_privacy_config()

    def save_privacy_config(self, privacy: Union[PrivacyConfig, Dict[str, Any]]) -> PrivacyConfig:
        snapshot = self.config_store.save_privacy_config(privacy)
        self._config_updated("privacy", snapshot)
        return self.config_store.get_privacy_config()

    def add_privacy_rule(self, category: str, pattern: str) -> PrivacyConfig:
        snapshot = self.config_store.add_privacy_rule(category, pattern)
        self._config_updated("privacy", snapshot)
        return self.config_store.get_privacy_config()

    def remove_privacy_rule(self, category: str, pattern: str) -> PrivacyConfig:
        snapshot = self.config_store.remove_privacy_rule(category, pattern)
        self._config_updated("privacy", snapshot)
        return self.config_store.get_privacy_config()

    def get_settings(self) -> Settings:
        return self.config_store.get_settings()

    def save_settings(self, settings: Union[Settings, Dict[str, Any]]) -> Settings:
        snapshot = self.config_store.save_settings(settings)
        self._config_updated("settings", snapshot)
        return self.config_store.get_settings()

    def get_search_config(self) -> SearchConfig:
        return self.config_store.get_search_config()

    def save_search_config(self, search: Union[SearchConfig, Dict[str, Any]]) -> SearchConfig:
        snapshot = self.config_store.save_search_config(search)
        self._config_updated("search", snapshot)
        return self.config_store.get_search_config()

    async def clean_data(self, before: Optional[datetime] = None) -> int:
        """Delete entries captured before ``before``, or everything when None."""
        if before is None:
            count = await asyncio.to_thread(self.store.delete_all)
            self.index.clear()
        else:
            ids = await asyncio.to_thread(self.store.delete_before, before)
            for entry_id in ids:
                self.index.remove(entry_id)
            count = len(ids)
        self.event_bus.publish(
            "data.cleaned", "daemon",
            count=count, before=before.isoformat() if before else None,
        )
        return count

    def _config_updated(self, section: str, snapshot: ConfigSnapshot) -> None:
        self.event_bus.publish("config.updated", "daemon", section=section, version=snapshot.version)

    async def get_full_status(self) -> dict:
        """``get_status`` plus a live reachability check of the LLM provider."""
        status = self.get_status()
        status["llm"]["reachable"] = await self.composer.llm_available()
        return status

    def get_status(self) -> dict:
        process = psutil.Process()
        uptime = (utcnow() - self.start_time).total_seconds()
        snapshot = self.config_store.snapshot()

        return {
            "status": "running",
            "version": __version__,
            "uptime": f"{uptime:.0f}s",
            "stats": {
                **self.stats,
                "memory_mb": process.memory_info().rss / 1024 / 1024,
                "cpu_percent": process.cpu_percent(),
            },
            "entries": self.store.counts(),
            "index": {
                "vectors": len(self.index),
                "states": self.store.index_state_counts(),
                **self.worker.get_stats(),
            },
            "capture": dict(self.pipeline.stats),
            "events": {"running": self.event_bus.running, **self.event_bus.get_stats()},
            "llm": self.composer.breaker.health.to_dict(),
            "config": {
                "version": snapshot.version,
                "data_dir": str(snapshot.config.data_dir),
                "embedding": self.embedder.name,
                "privacy_rules": snapshot.config.privacy.rule_count(),
            },
        }


def setup_logging(config: Config, level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
    )

    config.log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        config.log_dir / "daemon.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG",
    )


async def main(config_path: Optional[str] = None) -> None:
    """Main entry point for the daemon."""
    path = Path(config_path).expanduser() if config_path else default_config_path()
    config = Config.load(path)
    setup_logging(config)

    daemon = JotxDaemon(config, config_path=path)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, daemon.request_shutdown)

    try:
        await daemon.start()
        await daemon.wait_closed()
        logger.info("Shutdown requested")
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


def run(argv: Optional[Sequence[str]] = None) -> None:
    argv = list(sys.argv[1:] if argv is None else argv)
    asyncio.run(main(argv[0] if argv else None))


if __name__ == "__main__":
    run()
