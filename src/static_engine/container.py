"""Composition root: builds and wires every component of static-engine."""

import logging
from dataclasses import dataclass
from typing import Optional

from static_engine.api.websocket_manager import WebSocketManager
from static_engine.db.database import Database
from static_engine.services.asset_store import AssetStore, LocalAssetStore, R2AssetStore
from static_engine.services.copy_generator import CopyGenerator
from static_engine.services.credit_service import CreditService
from static_engine.services.generation_processor import GenerationProcessor
from static_engine.services.generation_service import GenerationService
from static_engine.services.image_generator import ImageGenerator
from static_engine.services.notifier import GenerationNotifier
from static_engine.services.prompt_validator import PromptValidator
from static_engine.tasks.task_queue import TaskOptions, TaskQueue
from static_engine.tasks.worker_pool import WorkerPool
from static_engine.utils.config import is_r2_configured

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived component, owned by the process entry point."""

    config: dict
    db: Database
    queue: TaskQueue
    validator: PromptValidator
    copy_generator: CopyGenerator
    image_generator: ImageGenerator
    asset_store: AssetStore
    ws_manager: WebSocketManager
    notifier: GenerationNotifier
    credits: CreditService
    generation_service: GenerationService
    processor: GenerationProcessor
    worker_pool: WorkerPool
    run_workers: bool = True
    started: bool = False

    async def start(self) -> None:
        """Connect the stores and, if enabled, start consuming tasks."""
        if self.started:
            return
        await self.db.connect()
        await self.queue.connect()
        if self.run_workers:
            await self.worker_pool.start()
        self.started = True
        logger.info("static-engine services started")

    async def stop(self) -> None:
        """Stop consuming, then close clients in reverse construction order."""
        if not self.started:
            return
        await self.worker_pool.stop()
        await self.asset_store.close()
        await self.image_generator.close()
        await self.copy_generator.close()
        await self.queue.close()
        await self.db.close()
        self.started = False
        logger.info("static-engine services stopped")


def build_asset_store(config: dict) -> AssetStore:
    """R2 when credentials are configured, local disk otherwise."""
    if is_r2_configured(config):
        return R2AssetStore(
            account_id=config["r2_account_id"],
            access_key_id=config["r2_access_key_id"],
            secret_access_key=config["r2_secret_access_key"],
            bucket_name=config.get("r2_bucket_name", "generated-ads"),
            public_url=config.get("r2_public_url"),
        )
    logger.info(f"R2 not configured, storing images under {config['uploads_dir']}")
    return LocalAssetStore(config["uploads_dir"], config.get("public_base_url", ""))


def build_container(
    config: dict,
    *,
    run_workers: bool = True,
    copy_generator: Optional[CopyGenerator] = None,
    image_generator: Optional[ImageGenerator] = None,
    asset_store: Optional[AssetStore] = None,
) -> ServiceContainer:
    """Construct every component leaf-first and wire collaborators.

    Args:
        config: Output of ``load_config()``
        run_workers: Start the worker pool in ``start()``
        copy_generator: Replacement copy generator (tests)
        image_generator: Replacement image generator (tests)
        asset_store: Replacement asset store (tests)

    Returns:
        Unstarted container
    """
    db = Database(config["database_path"])
    queue = TaskQueue(
        config["queue_path"],
        default_options=TaskOptions(
            attempts=config.get("task_attempts", 2),
            backoff_delay=config.get("task_backoff_seconds", 5.0),
        ),
    )
    validator = PromptValidator()

    copy_generator = copy_generator or CopyGenerator(
        api_key=config.get("gemini_api_key") or "",
        model_name=config.get("copy_model", "gemini-2.5-flash"),
        db=db,
    )
    image_generator = image_generator or ImageGenerator(
        api_key=config.get("gemini_api_key") or "",
        model_name=config.get("image_model", "gemini-2.5-flash-image"),
        max_attempts=config.get("image_max_attempts", 4),
        retry_delays=config.get("image_retry_delays", [5, 15, 30, 45]),
        timeout=config.get("image_timeout_seconds", 180.0),
    )
    asset_store = asset_store or build_asset_store(config)

    ws_manager = WebSocketManager()
    notifier = GenerationNotifier(ws_manager)
    credits = CreditService(db)

    generation_service = GenerationService(
        db=db,
        queue=queue,
        copy_generator=copy_generator,
        credits=credits,
        task_options=queue.default_options,
    )
    processor = GenerationProcessor(
        db=db,
        copy_generator=copy_generator,
        image_generator=image_generator,
        asset_store=asset_store,
        validator=validator,
        notifier=notifier,
    )
    worker_pool = WorkerPool(
        queue,
        processor.handle,
        concurrency=config.get("worker_concurrency", 2),
        poll_interval=config.get("worker_poll_interval", 1.0),
    )

    return ServiceContainer(
        config=config,
        db=db,
        queue=queue,
        validator=validator,
        copy_generator=copy_generator,
        image_generator=image_generator,
        asset_store=asset_store,
        ws_manager=ws_manager,
        notifier=notifier,
        credits=credits,
        generation_service=generation_service,
        processor=processor,
        worker_pool=worker_pool,
        run_workers=run_workers,
    )
