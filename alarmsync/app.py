"""Service runtime — trigger queue, ticker and the serialized consumer loop.

Producers (ticker, file watcher, callers) put trigger dicts on one
asyncio.Queue. The consumer drains everything queued, coalesces it, and runs
the synchronous engine in a worker thread, one batch at a time.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from alarmsync.adapters.calendar.json_source import JsonEventSource
from alarmsync.adapters.host.memory_host import InMemoryHostScheduler
from alarmsync.adapters.storage.alarm_store import JsonAlarmStore
from alarmsync.adapters.storage.json_store import JsonStorage
from alarmsync.adapters.storage.rule_store import JsonRuleStore
from alarmsync.config import AppConfig
from alarmsync.domain.engine import AlarmSyncEngine
from alarmsync.domain.keys import KeyAllocator
from alarmsync.infrastructure.single_flight import SingleFlight
from alarmsync.watcher import start_source_watcher

TRIGGER_TYPES = ("tick", "source_changed", "user_refresh", "timezone_changed", "reconcile")

_SCHEDULING_TRIGGERS = {"tick", "source_changed", "user_refresh"}
_RECONCILE_TRIGGERS = {"tick", "user_refresh", "reconcile"}


def _log(msg: str):
    print(msg, file=sys.stderr)


class TriggerLoop:
    """Queue-based consumer: blocks until triggers arrive, zero polling."""

    def __init__(self, engine: AlarmSyncEngine, queue: Optional[asyncio.Queue] = None):
        self.engine = engine
        self.queue = queue or asyncio.Queue()

    def drain(self, first: Dict[str, Any]) -> List[Dict[str, Any]]:
        triggers = [first]
        while not self.queue.empty():
            triggers.append(self.queue.get_nowait())
        return triggers

    async def process(self, triggers: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Run at most one scheduling pass and one sweep for a batch."""
        types = {t.get("type") for t in triggers}
        unknown = types.difference(TRIGGER_TYPES)
        if unknown:
            _log(f"[TriggerLoop] ignoring unknown trigger(s): {sorted(map(str, unknown))}")

        outcome: Dict[str, Any] = {}
        forced = "user_refresh" in types
        if "timezone_changed" in types:
            tz = next((t.get("tz") for t in reversed(triggers) if t.get("type") == "timezone_changed"), None)
            outcome["scheduling"] = await asyncio.to_thread(self.engine.handle_timezone_change, tz)
        elif types & _SCHEDULING_TRIGGERS:
            outcome["scheduling"] = await asyncio.to_thread(self.engine.run_scheduling_pass, None, None, forced)

        if types & _RECONCILE_TRIGGERS:
            outcome["reconciliation"] = await asyncio.to_thread(self.engine.run_reconciliation_pass, forced)
        return outcome

    async def run(self):
        _log("[TriggerLoop] started (queue consumer)")
        while True:
            first = await self.queue.get()
            triggers = self.drain(first)
            _log(f"[TriggerLoop] triggers received: {[t.get('type') for t in triggers]}")
            try:
                await self.process(triggers)
            except Exception as e:
                _log(f"[TriggerLoop] error processing triggers: {e}")


async def ticker(queue: asyncio.Queue, interval_seconds: float):
    """Periodic ``tick`` producer."""
    while True:
        await asyncio.sleep(interval_seconds)
        queue.put_nowait({"type": "tick"})


def build_engine(config: AppConfig, host: Optional[InMemoryHostScheduler] = None) -> AlarmSyncEngine:
    """Wire JSON adapters and the simulated host into an engine."""
    storage = JsonStorage(config.storage.storage_dir)
    rules_path = config.storage.rules_path
    rule_store = JsonRuleStore(JsonStorage(str(rules_path.parent)), key=rules_path.stem)
    rule_store.create_default_rules()
    sched = config.scheduling
    return AlarmSyncEngine(
        events=JsonEventSource(config.storage.events_file),
        rules=rule_store,
        alarms=JsonAlarmStore(storage),
        host=host or InMemoryHostScheduler(key_space=sched.key_space),
        lookahead=sched.lookahead,
        duplicate_mode=sched.duplicate_mode,
        all_day=config.all_day.policy(),
        keys=KeyAllocator(key_space=sched.key_space, max_attempts=sched.max_key_attempts),
        tracker=config.recovery.tracker(),
        guard=SingleFlight(debounce_seconds=sched.debounce_seconds),
        expired_retention=sched.expired_retention,
    )


async def serve(config: AppConfig):
    engine = build_engine(config)
    trigger_loop = TriggerLoop(engine)
    loop = asyncio.get_running_loop()

    watched = [config.storage.events_file, str(config.storage.rules_path)]
    observer = start_source_watcher(loop, trigger_loop.queue, watched)
    trigger_loop.queue.put_nowait({"type": "user_refresh"})
    tick_task = asyncio.create_task(ticker(trigger_loop.queue, config.refresh_interval_minutes * 60))
    _log(f"[App] events: {Path(config.storage.events_file)}, refresh every {config.refresh_interval_minutes}m")
    try:
        await trigger_loop.run()
    finally:
        tick_task.cancel()
        observer.stop()


def main():
    try:
        asyncio.run(serve(AppConfig.from_env()))
    except KeyboardInterrupt:
        _log("[App] stopped")
