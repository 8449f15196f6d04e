"""
Dependency Injection Container.

This provides:
- Centralized dependency management
- Easy testing with overrides
- Lazy initialization
- Ordered lifecycle management
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from voiceclone.core.config import Settings
from voiceclone.core.logging import get_logger

logger = get_logger(__name__)


class Container:
    """
    Dependency injection container.

    Factories receive already-resolved dependencies by name through `requires`,
    so the audio worker is created once and shared by the runner and routes.

    Usage:
        container = Container()
        container.register("job_store", InMemoryJobStore)
        container.register("state_machine", JobStateMachine, requires={"store": "job_store"})
        machine = await container.get("state_machine")
    """

    def __init__(self):
        self._factories: Dict[str, tuple] = {}
        self._instances: Dict[str, Any] = {}
        self._order: list = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._initialized = False

    def register(
        self,
        name: str,
        factory: Callable[..., Any],
        requires: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> None:
        """
        Register a singleton dependency.

        Args:
            name: Dependency name
            factory: Class or factory function
            requires: Mapping of factory argument to dependency name
            **kwargs: Plain arguments to pass to factory
        """
        self._factories[name] = (factory, requires or {}, kwargs)
        self._locks[name] = asyncio.Lock()

    def is_registered(self, name: str) -> bool:
        return name in self._factories or name in self._instances

    async def get(self, name: str) -> Any:
        """Get (creating and initializing on first use) a dependency instance."""
        if name in self._instances:
            return self._instances[name]
        if name not in self._factories:
            raise KeyError(f"Dependency not registered: {name}")

        factory, requires, kwargs = self._factories[name]

        async with self._locks[name]:
            # Double-check after acquiring lock
            if name in self._instances:
                return self._instances[name]

            arguments = dict(kwargs)
            for argument, dependency in requires.items():
                arguments[argument] = await self.get(dependency)

            logger.info(f"Creating dependency: {name}")
            instance = factory(**arguments)

            if hasattr(instance, "initialize"):
                await instance.initialize()

            self._instances[name] = instance
            self._order.append(name)
            return instance

    async def initialize_all(self) -> None:
        """Initialize all registered dependencies."""
        if self._initialized:
            return

        logger.info("Initializing all dependencies...")
        for name in self._factories:
            await self.get(name)

        self._initialized = True
        logger.info("All dependencies initialized")

    async def shutdown(self) -> None:
        """Shut down dependencies in reverse creation order."""
        logger.info("Shutting down dependencies...")

        for name in reversed(self._order):
            instance = self._instances.get(name)
            if hasattr(instance, "shutdown"):
                logger.info(f"Shutting down: {name}")
                result = instance.shutdown()
                if asyncio.iscoroutine(result):
                    await result

        self._instances.clear()
        self._order.clear()
        self._initialized = False
        logger.info("All dependencies shut down")

    def override(self, name: str, instance: Any) -> None:
        """Use a specific instance for a dependency (for testing)."""
        self._instances[name] = instance

    def clear(self) -> None:
        """Clear all instances (for testing)."""
        self._instances.clear()
        self._order.clear()
        self._initialized = False


# Global container instance
_container: Optional[Container] = None


def get_container() -> Container:
    """Get the global container instance."""
    global _container
    if _container is None:
        _container = Container()
    return _container


def set_container(container: Container) -> None:
    """Set the global container instance."""
    global _container
    _container = container


def setup_container(settings: Settings, container: Optional[Container] = None) -> Container:
    """
    Register every pipeline service on a container.

    The job store is Redis-backed when `redis_url` is set and in-memory
    otherwise; training goes to the remote service when `training_api_url`
    is set and is simulated locally otherwise.
    """
    from voiceclone.services.backoff import BackoffPolicy
    from voiceclone.services.jobs import JobStateMachine
    from voiceclone.services.pipeline import AudioWorker, ProcessingContext
    from voiceclone.services.recordings import RecordingStore
    from voiceclone.services.runner import JobRunner
    from voiceclone.services.store import InMemoryJobStore, RedisJobStore
    from voiceclone.services.training import HttpTrainingClient, LocalTrainingClient

    container = container or get_container()

    container.register(
        "audio_worker",
        AudioWorker,
        context=ProcessingContext(
            sample_rate=settings.target_sample_rate,
            high_pass_cutoff_hz=settings.high_pass_cutoff_hz,
            target_peak=settings.target_peak,
        ),
        timeout=settings.worker_timeout_seconds,
    )

    if settings.redis_url:
        container.register("job_store", RedisJobStore, redis_url=settings.redis_url)
    else:
        container.register("job_store", InMemoryJobStore)

    container.register("state_machine", JobStateMachine, requires={"store": "job_store"})
    container.register("recordings", RecordingStore, storage_dir=settings.storage_dir)

    if settings.training_api_url:
        container.register(
            "training_client",
            HttpTrainingClient,
            base_url=settings.training_api_url,
            api_key=settings.training_api_key,
            timeout=settings.training_timeout_seconds,
            backoff=BackoffPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
            ),
        )
    else:
        container.register("training_client", LocalTrainingClient)

    container.register(
        "runner",
        JobRunner,
        requires={
            "machine": "state_machine",
            "worker": "audio_worker",
            "recordings": "recordings",
            "training": "training_client",
        },
    )

    return container
