"""
Facade exposing the local-first data API.

DataHandler owns one engine instance: the event broker, the sync state,
the coordinator with its cache and offline queue, and the connectivity
monitor. Nothing is kept in module-level globals, so several handlers
can run side by side (for example one per test).
"""

from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .events.broker import Subscription, SyncEventBroker
from .storage import open_store
from .sync.clock import Clock
from .sync.config import EngineConfig
from .sync.connectivity import ConnectivityMonitor, ManualConnectivitySource
from .sync.coordinator import SyncCoordinator
from .sync.interfaces import ConnectivitySource, KeyValueStore, LegacyStorageReader, RemoteDocumentClient
from .sync.logging_config import PerformanceTimer, get_logger, setup_sync_logging
from .sync.models import EventType, FlushResult, SyncEvent, SyncState, SyncStatus
from .sync.remote import HttpDocumentClient


logger = get_logger(__name__)

NAVIGATION_TELEMETRY_LIMIT = 100
USER_PROFILE_KEY = "user_profile"
PROFILE_SECTIONS = ("demographics", "philosophy", "consent")

ConfigLike = Union[EngineConfig, Mapping[str, Any], None]


class DataHandler:
    """Single consistent read/write API over cache, local store and remote store.

    Collaborators not passed in are created from the configuration at
    ``initialize()``: a DuckDB or in-memory store, an HTTP document client
    when ``remote_url`` is set, and an always-online connectivity signal.
    """

    def __init__(self,
                 store: Optional[KeyValueStore] = None,
                 remote: Optional[RemoteDocumentClient] = None,
                 connectivity: Optional[ConnectivitySource] = None,
                 legacy_reader: Optional[LegacyStorageReader] = None,
                 clock: Optional[Clock] = None):
        self._store = store
        self._remote = remote
        self._connectivity = connectivity
        self._legacy_reader = legacy_reader
        self._clock = clock or Clock()

        self._owns_store = False
        self._owns_remote = False
        self._config: Optional[EngineConfig] = None
        self._state: Optional[SyncState] = None
        self._coordinator: Optional[SyncCoordinator] = None
        self._monitor: Optional[ConnectivityMonitor] = None
        self._broker = SyncEventBroker()
        self._initialized = False

        self._performance = {
            "operation_count": 0,
            "total_response_time_ms": 0.0,
        }

    # Lifecycle

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def config(self) -> Optional[EngineConfig]:
        return self._config

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._require_initialized()

    async def initialize(self, config: ConfigLike = None) -> None:
        """Start the engine: migrate legacy data, load the queue and watch connectivity.

        Calling it again on an initialized handler does nothing.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if self._initialized:
            logger.debug("DataHandler already initialized")
            return

        config = EngineConfig.from_options(config)
        setup_sync_logging(config.log_level)
        self._config = config

        if self._store is None or self._owns_store:
            self._store = open_store(config.storage_path, config.storage_quota_bytes)
            self._owns_store = True

        if self._remote is None and config.enable_remote and config.remote_url:
            self._remote = HttpDocumentClient(
                config.remote_url, collection=config.remote_collection,
                request_timeout_seconds=config.remote_timeout_seconds
            )
            self._owns_remote = True

        self._state = SyncState()
        self._coordinator = SyncCoordinator(
            config, self._store, self._broker, self._state, self._clock,
            remote=self._remote, legacy_reader=self._legacy_reader
        )
        report = self._coordinator.migrate(config.legacy_keys)

        # Pushed signals need no polling
        poll_interval = None
        if self._connectivity is not None and not isinstance(self._connectivity, ManualConnectivitySource):
            poll_interval = config.connectivity_poll_interval_seconds

        self._monitor = ConnectivityMonitor(
            self._broker, self._state, self._clock,
            source=self._connectivity,
            on_reconnect=self._coordinator.flush_after_reconnect,
            poll_interval_seconds=poll_interval,
        )
        await self._monitor.start()
        self._coordinator.start()
        self._initialized = True

        logger.info(
            f"DataHandler initialized for {config.app_name} {config.version} "
            f"(remote: {self._coordinator.remote_enabled}, caching: {config.enable_caching}, "
            f"offline queue: {config.enable_offline_queue}, migrated: {len(report.migrated)})"
        )

    async def shutdown(self) -> None:
        """Stop background work and release owned resources."""
        if not self._initialized:
            return

        await self._monitor.stop()
        await self._coordinator.close()
        await self._broker.drain()

        if self._owns_remote and isinstance(self._remote, HttpDocumentClient):
            self._remote.close()
            self._remote = None
            self._owns_remote = False
        if self._owns_store and hasattr(self._store, "close"):
            self._store.close()

        self._initialized = False
        logger.info("DataHandler shut down")

    async def __aenter__(self) -> "DataHandler":
        await self.initialize(self._config)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    def _require_initialized(self) -> SyncCoordinator:
        if not self._initialized or self._coordinator is None:
            raise RuntimeError("DataHandler is not initialized; call initialize() first")
        return self._coordinator

    def _record_timing(self, timer: PerformanceTimer) -> None:
        self._performance["operation_count"] += 1
        self._performance["total_response_time_ms"] += timer.latency_ms

    # Data API

    async def get_data(self, key: str, bypass_cache: bool = False,
                       ttl_seconds: Optional[float] = None) -> Any:
        """Return the value stored under a key, or None if it does not exist.

        Args:
            key: Application key
            bypass_cache: Read from the local store even if the key is cached
            ttl_seconds: Treat cached entries older than this as stale
        """
        coordinator = self._require_initialized()
        with PerformanceTimer(logger, "get_data", key=key) as timer:
            value = await coordinator.read(key, bypass_cache=bypass_cache, ttl_seconds=ttl_seconds)
        self._record_timing(timer)
        return value

    async def set_data(self, key: str, value: Any) -> bool:
        """Store a value.

        Returns:
            True when the value is durable in the local store, False when it
            is only held in memory because the store is full

        Raises:
            SerializationError: If the value does not round-trip through JSON
            ValueError: If the key is empty
        """
        coordinator = self._require_initialized()
        with PerformanceTimer(logger, "set_data", key=key) as timer:
            await coordinator.write(key, value)
        self._record_timing(timer)
        return coordinator.is_persisted(key)

    async def remove_data(self, key: str) -> None:
        """Remove a key locally and, eventually, remotely."""
        coordinator = self._require_initialized()
        with PerformanceTimer(logger, "remove_data", key=key) as timer:
            await coordinator.remove(key)
        self._record_timing(timer)

    async def get_batch(self, keys: Iterable[str], bypass_cache: bool = False,
                        ttl_seconds: Optional[float] = None) -> Dict[str, Any]:
        """Read several keys; missing keys map to None."""
        results = {}
        for key in keys:
            results[key] = await self.get_data(key, bypass_cache=bypass_cache, ttl_seconds=ttl_seconds)
        return results

    async def set_batch(self, entries: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]) -> List[Dict[str, Any]]:
        """Write several keys in order.

        Every key and value is validated before anything is written, so a
        bad entry leaves all keys untouched.

        Returns:
            One ``{"key": ..., "success": ...}`` entry per key, in order;
            success is False for values only held in memory
        """
        coordinator = self._require_initialized()
        items = list(entries.items()) if isinstance(entries, Mapping) else list(entries)

        for key, value in items:
            coordinator.validate_key(key)
            coordinator.normalize_value(key, value)

        results = []
        for key, value in items:
            results.append({"key": key, "success": await self.set_data(key, value)})
        return results

    # Short aliases

    async def get(self, key: str, bypass_cache: bool = False, ttl_seconds: Optional[float] = None) -> Any:
        return await self.get_data(key, bypass_cache=bypass_cache, ttl_seconds=ttl_seconds)

    async def set(self, key: str, value: Any) -> bool:
        return await self.set_data(key, value)

    async def remove(self, key: str) -> None:
        await self.remove_data(key)

    # Events and status

    def subscribe(self, callback: Callable[[SyncEvent], Any],
                  event_types: Optional[Iterable[EventType]] = None) -> Subscription:
        """Subscribe to sync status events; returns a handle with ``unsubscribe()``."""
        return self._broker.subscribe(callback, event_types)

    def events(self, event_types: Optional[Iterable[EventType]] = None) -> AsyncIterator[SyncEvent]:
        """Async iterator over sync status events."""
        return self._broker.channel(event_types)

    def get_status(self) -> SyncStatus:
        return self._require_initialized().get_status()

    async def flush(self) -> FlushResult:
        """Replay queued operations now, ignoring retry delays."""
        coordinator = self._require_initialized()
        return await coordinator.flush(ignore_backoff=True)

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        return self._require_initialized().clear_cache(pattern)

    def get_performance_metrics(self) -> Dict[str, Any]:
        """Cache efficiency, operation counts and response times."""
        coordinator = self._require_initialized()
        metrics = coordinator.get_metrics()

        hits = metrics["cache_hits"]
        lookups = hits + metrics["cache_misses"]
        count = self._performance["operation_count"]

        return {
            "cache_hits": hits,
            "cache_misses": metrics["cache_misses"],
            "cache_hit_rate": (hits / lookups * 100) if lookups else 0.0,
            "cache_size": metrics["cache"]["size"],
            "local_operations": metrics["local_reads"] + metrics["local_writes"],
            "remote_operations": metrics["remote_operations"] + metrics["remote_reads"],
            "remote_failures": metrics["remote_failures"],
            "operation_count": count,
            "average_response_time_ms": (
                self._performance["total_response_time_ms"] / count if count else 0.0
            ),
            "queue_length": self.get_status().pending_count,
            "events": self._broker.get_metrics(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Report engine health as healthy, degraded or critical."""
        coordinator = self._require_initialized()
        status = coordinator.get_status()

        local_ok = coordinator.check_local_store()
        remote_ok = coordinator.remote_enabled and status.online

        if not local_ok and not remote_ok:
            overall = "critical"
        elif not local_ok or (coordinator.remote_enabled and not remote_ok):
            overall = "degraded"
        else:
            overall = "healthy"

        health = {
            "status": overall,
            "timestamp": self._clock.now().isoformat(),
            "online": status.online,
            "local_store": local_ok,
            "remote": remote_ok,
            "queue": status.pending_count,
            "metrics": self.get_performance_metrics(),
        }
        if overall != "healthy":
            logger.warning(f"Health check: {overall} (local store: {local_ok}, remote: {remote_ok})")
        return health

    # Application data helpers

    async def get_user_preferences(self, user_id: str = "default") -> Dict[str, Any]:
        return (await self.get_data(f"preferences_{user_id}")) or {}

    async def save_user_preferences(self, preferences: Dict[str, Any], user_id: str = "default") -> None:
        await self.set_data(f"preferences_{user_id}", preferences)

    async def get_user_progress(self, user_id: str = "default") -> Dict[str, Any]:
        return (await self.get_data(f"progress_{user_id}")) or {}

    async def save_user_progress(self, progress: Dict[str, Any], user_id: str = "default") -> None:
        await self.set_data(f"progress_{user_id}", progress)

    async def get_settings(self) -> Dict[str, Any]:
        return (await self.get_data("app_settings")) or {}

    async def save_settings(self, settings: Dict[str, Any]) -> None:
        await self.set_data("app_settings", settings)

    async def get_navigation_telemetry(self, user_id: str = "default") -> List[Any]:
        return (await self.get_data(f"nav_telemetry_{user_id}")) or []

    async def save_navigation_telemetry(self, telemetry: Union[Dict[str, Any], List[Any]],
                                        user_id: str = "default") -> None:
        """Append telemetry entries, keeping only the most recent ones."""
        existing = await self.get_navigation_telemetry(user_id)
        entries = existing if isinstance(existing, list) else []

        if isinstance(telemetry, list):
            entries.extend(telemetry)
        else:
            entries.append(telemetry)

        await self.set_data(f"nav_telemetry_{user_id}", entries[-NAVIGATION_TELEMETRY_LIMIT:])

    async def get_user_achievements(self, user_id: str = "default") -> List[Any]:
        return (await self.get_data(f"achievements_{user_id}")) or []

    async def save_user_achievements(self, achievements: List[Any], user_id: str = "default") -> None:
        await self.set_data(f"achievements_{user_id}", achievements)

    async def get_scenario_completions(self, user_id: str = "default") -> List[Dict[str, Any]]:
        return (await self.get_data(f"scenario_completions_{user_id}")) or []

    async def save_scenario_completion(self, completion: Dict[str, Any],
                                       user_id: str = "default") -> Dict[str, Any]:
        """Append a scenario completion and return the stored entry."""
        now = self._clock.now()
        entry = {
            **completion,
            "id": f"{completion.get('category_id')}_{completion.get('scenario_id')}_{_millis(now)}",
            "saved_at": now.isoformat(),
        }
        completions = await self.get_scenario_completions(user_id)
        completions.append(entry)
        await self.set_data(f"scenario_completions_{user_id}", completions)
        return entry

    async def get_consent_data(self, user_id: str = "default") -> Optional[Dict[str, Any]]:
        return await self.get_data(f"research_consent_{user_id}")

    async def save_consent_data(self, consent: Dict[str, Any], user_id: str = "default") -> bool:
        now = self._clock.now()
        return await self.set_data(f"research_consent_{user_id}", {
            **consent,
            "saved_at": now.isoformat(),
            "id": f"consent_{_millis(now)}",
        })

    async def get_session_data(self, session_key: str, user_id: str = "default") -> Optional[Dict[str, Any]]:
        return await self.get_data(f"session_{session_key}_{user_id}")

    async def save_session_data(self, session_key: str, data: Dict[str, Any],
                                user_id: str = "default") -> bool:
        return await self.set_data(f"session_{session_key}_{user_id}", {
            **data,
            "saved_at": self._clock.now().isoformat(),
            "session_id": session_key,
        })

    # User profile

    async def get_user_profile(self) -> Optional[Dict[str, Any]]:
        return await self.get_data(USER_PROFILE_KEY)

    async def save_user_profile(self, profile: Dict[str, Any]) -> bool:
        """Store the user profile stamped with the app version and save time."""
        return await self.set_data(USER_PROFILE_KEY, {
            **profile,
            "version": self._config.version,
            "last_saved": self._clock.now().isoformat(),
        })

    async def update_user_profile_section(self, section: str, data: Dict[str, Any]) -> bool:
        """Merge fields into one section of the profile."""
        profile = (await self.get_user_profile()) or {}
        current = profile.get(section)
        merged = {**current, **data} if isinstance(current, dict) else dict(data)
        return await self.save_user_profile({
            **profile,
            section: merged,
            "updated_at": self._clock.now().isoformat(),
        })

    async def delete_user_profile(self) -> None:
        await self.remove_data(USER_PROFILE_KEY)

    async def has_user_profile(self) -> bool:
        return bool(await self.get_user_profile())

    async def get_user_profile_completion(self) -> Dict[str, Any]:
        """Report which profile sections are filled in."""
        profile = await self.get_user_profile()
        if not profile:
            return {"percentage": 0, "sections": [], "total_sections": len(PROFILE_SECTIONS), "profile": None}

        completed = [section for section in PROFILE_SECTIONS if profile.get(section)]
        return {
            "percentage": round(len(completed) / len(PROFILE_SECTIONS) * 100),
            "sections": completed,
            "total_sections": len(PROFILE_SECTIONS),
            "profile": profile,
        }

    # Onboarding tour

    async def get_onboarding_data(self, name: str) -> Optional[Dict[str, Any]]:
        return await self.get_data(f"onboarding_{name}")

    async def save_onboarding_data(self, name: str, data: Dict[str, Any]) -> bool:
        return await self.set_data(f"onboarding_{name}", {
            **data,
            "saved_at": self._clock.now().isoformat(),
            "version": self._config.version,
        })

    async def get_onboarding_analytics(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.get_onboarding_data(f"analytics_{session_id}")

    async def save_onboarding_analytics(self, session_id: str, analytics: Dict[str, Any]) -> bool:
        return await self.save_onboarding_data(f"analytics_{session_id}", {
            "type": "analytics",
            "session_id": session_id,
            "analytics": analytics,
        })

    async def get_onboarding_progress(self) -> Optional[Dict[str, Any]]:
        return await self.get_onboarding_data("progress")

    async def save_onboarding_progress(self, progress: Dict[str, Any]) -> bool:
        return await self.save_onboarding_data("progress", {"type": "progress", **progress})

    async def delete_onboarding_data(self) -> None:
        """Remove the onboarding tour state, including analytics of every session."""
        keys = [f"onboarding_{name}" for name in ("tour_data", "progress")]
        keys.extend(self.coordinator.list_keys("onboarding_analytics_"))
        for key in keys:
            await self.remove_data(key)
        logger.info(f"Deleted {len(keys)} onboarding entries")

    async def export_user_data(self, user_id: str = "default") -> Dict[str, Any]:
        """Collect everything stored for a user into one exportable document."""
        preferences = await self.get_user_preferences(user_id)
        progress = await self.get_user_progress(user_id)
        settings = await self.get_settings()
        navigation = await self.get_navigation_telemetry(user_id)
        achievements = await self.get_user_achievements(user_id)
        scenarios = await self.get_scenario_completions(user_id)
        consent = await self.get_consent_data(user_id)
        profile = await self.get_user_profile()

        return {
            "export_date": self._clock.now().isoformat(),
            "version": self._config.version,
            "user_id": user_id,
            "profile": profile,
            "preferences": preferences,
            "progress": progress,
            "settings": settings,
            "navigation": navigation,
            "achievements": achievements,
            "scenarios": scenarios,
            "consent": consent,
            "summary": {
                "total_navigation_events": len(navigation),
                "total_achievements": len(achievements),
                "total_scenarios": len(scenarios),
                "has_preferences": bool(preferences),
                "has_progress": bool(progress),
                "has_settings": bool(settings),
                "has_consent": consent is not None,
                "has_profile": bool(profile),
            },
        }


def _millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)
