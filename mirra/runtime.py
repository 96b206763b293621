"""
Mirra Runtime

Composes the root server and the node sessions of one mirra instance around
a shared identity, registry and set of content stores.
"""

import asyncio
import signal

from mirra.config import ConfigManager, MirraConfig
from mirra.identity import KNOWN_PEERS_FILE, IdentityManager, TrustStore
from mirra.logging import get_logger
from mirra.registry import Module, ModuleRegistry, ModuleRole
from mirra.store import ContentStore
from mirra.sync.backoff import BackoffPolicy
from mirra.sync.client import SyncedModuleManager
from mirra.sync.server import RootServer

logger = get_logger("runtime")


class MirraRuntime:
    """
    A running mirra: serves its served (and reshared) modules and replicates
    its synced modules.

    Raises ConfigError from the constructor if the configured modules are
    invalid, and IdentityCorrupt from :meth:`start` if the key pair is.
    """

    def __init__(self, manager: ConfigManager, config: MirraConfig | None = None):
        self.manager = manager
        self.config = config or manager.load()
        self.identity = IdentityManager(manager.data_dir, self.config.node.name)
        self.trust = TrustStore(manager.data_dir / KNOWN_PEERS_FILE)
        self.registry = ModuleRegistry(
            manager.to_modules(self.config), state_file=manager.get_state_path()
        )
        self.stores: dict[str, ContentStore] = {}

        sync = self.config.sync
        self.server = RootServer(
            self.identity,
            self.registry,
            host=self.config.node.host,
            port=self.config.node.port,
            stores=self.stores,
            handshake_timeout=sync.handshake_timeout,
            outbox_size=sync.outbox_size,
            stall_timeout=sync.stall_timeout,
            heartbeat_interval=sync.heartbeat_interval,
            watcher_options={"debounce": sync.debounce, "max_delay": sync.max_delay},
        )
        self.nodes = SyncedModuleManager(
            self.registry,
            self.identity,
            self.trust,
            stores=self.stores,
            backoff=BackoffPolicy(
                initial_delay=sync.backoff_initial,
                factor=sync.backoff_factor,
                max_delay=sync.backoff_max,
            ),
            reconcile_interval=sync.reconcile_interval,
            handshake_timeout=sync.handshake_timeout,
            request_timeout=sync.request_timeout,
            inbox_size=sync.inbox_size,
        )
        self.registry.add_listener(self._on_module_added)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self.identity.generate()
        logger.info(f"Starting mirra {self.identity.name} ({self.identity.key_id})")
        await self.server.start()
        await self.nodes.start()
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        await self.nodes.stop()
        await self.server.stop()
        self.registry.flush()
        logger.info("Mirra stopped")

    async def _on_module_added(self, module: Module) -> None:
        if not self._running:
            return
        if module.is_served:
            await self.server.add_module(module)
        if module.role == ModuleRole.SYNCED:
            self.nodes.start_module(module)

    async def add_module(self, module: Module) -> None:
        """Register a module and start serving or syncing it."""
        await self.registry.add(module)

    async def remove_module(self, name: str) -> Module:
        """Stop serving and syncing a module, then drop it from the registry."""
        await self.server.remove_module(name)
        module = await self.registry.remove(name)
        self.stores.pop(name, None)
        return module

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Run until ``stop_event`` is set or SIGINT/SIGTERM arrives."""
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Not on the main thread, or no signal support
                pass

        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
