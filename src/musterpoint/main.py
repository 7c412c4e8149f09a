"""
MusterPoint Main Application Entry Point

Wires configuration, logging, the document store and the emergency
coordinator together, and exposes a small maintenance CLI.
"""

import argparse
import asyncio
import json
import signal
import sys
import traceback
from typing import Any, Dict, List, Optional

from .core.config import ConfigurationError, ConfigurationManager
from .core.database import DatabaseError, DocumentStore, open_document_store
from .core.identity import StaticIdentityProvider
from .core.logging import get_logger, initialize_logging
from .core.task_queue import BackgroundTaskQueue
from .models.user import Actor, UserRole
from .services.emergency import EmergencyCoordinator, EmergencyError
from .services.sync import LocalStateCache, StateReconciler


# Identity used by maintenance commands run from the CLI
MAINTENANCE_ACTOR = Actor(user_id="musterpoint-maintenance", display_name="MusterPoint",
                          role=UserRole.ORGANIZER)


class MusterPointApplication:
    """Main MusterPoint application class"""

    def __init__(self, config_dir: str = "config", actor: Optional[Actor] = None):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.store: Optional[DocumentStore] = None
        self.tasks: Optional[BackgroundTaskQueue] = None
        self.identity = StaticIdentityProvider(actor or MAINTENANCE_ACTOR)
        self.coordinator: Optional[EmergencyCoordinator] = None
        self.reconciler: Optional[StateReconciler] = None
        self.logger = None

        self.running = False
        self.shutdown_event = asyncio.Event()

    async def initialize(self):
        """Initialize all application components"""
        try:
            self.config_manager = ConfigurationManager(self.config_dir)
            self.config_manager.load_config()

            initialize_logging(self.config_manager.config)
            self.logger = get_logger('main')
            self.logger.info("MusterPoint starting up...")
            self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
            self.logger.info(f"Debug mode: {self.config_manager.get('app.debug', False)}")

            self.store = open_document_store(
                self.config_manager.get('database.path', 'data/musterpoint.db'),
                self.config_manager.get('database.max_connections', 10),
            )
            self.tasks = BackgroundTaskQueue(
                workers=self.config_manager.get('notifications.workers', 2),
                max_queue_size=self.config_manager.get('notifications.max_queue_size', 1000),
                max_retries=self.config_manager.get('notifications.max_retries', 1),
            )
            self.coordinator = EmergencyCoordinator.from_config(
                self.config_manager, self.store, self.identity, self.tasks)
            self.reconciler = StateReconciler(
                self.store, self.identity, self.coordinator.locks,
                LocalStateCache(self.config_manager.get('sync.cache_file')),
                lock_ttl=self.config_manager.get('locks.reconciliation_ttl_seconds', 8),
            )
            await self.coordinator.start()
            self.running = True
            self.logger.info("Core systems initialized successfully")

        except Exception as e:
            if self.logger:
                self.logger.error(f"Failed to initialize application: {e}", exc_info=True)
            else:
                print(f"Failed to initialize application: {e}")
                traceback.print_exc()
            raise

    async def run_forever(self, cleanup_interval: Optional[float] = None):
        """Run reconciliation and periodic duplicate cleanup until signalled"""
        interval = cleanup_interval or self.config_manager.get('emergency.cleanup_interval_seconds', 3600)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown_event.set)

        await self.reconciler.start()
        self.logger.info("MusterPoint is now running")
        while not self.shutdown_event.is_set():
            try:
                reports = await self.coordinator.cleanup_all()
                resolved = sum(len(r.resolved) for r in reports)
                self.logger.info(f"Cleanup sweep: {len(reports)} reporters, {resolved} duplicates resolved")
            except DatabaseError as e:
                self.logger.error(f"Error in cleanup sweep: {e}")
            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Shutdown signal received")

    async def shutdown(self):
        """Shutdown the application gracefully"""
        if not self.running:
            return

        self.logger.info("Shutting down MusterPoint...")
        self.running = False
        if self.reconciler:
            self.reconciler.stop()
        if self.coordinator:
            await self.coordinator.stop()
        if self.store:
            self.store.close_subscriptions()
            self.store.db.close()
        self.logger.info("MusterPoint shutdown complete")

    def get_system_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {'running': self.running}
        if self.tasks:
            status['task_queue'] = self.tasks.get_stats()
        if self.store:
            status['database'] = self.store.db.get_stats()
            status['subscriptions'] = self.store.subscription_count
        if self.coordinator:
            status['tracking_sessions'] = self.coordinator.tracker.active_sessions
        if self.reconciler:
            status['sync'] = self.reconciler.get_sync_status()
        return status


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="musterpoint", description="MusterPoint emergency coordination")
    parser.add_argument("--config-dir", default="config", help="Directory holding default.yaml/config.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)

    cleanup = subparsers.add_parser("cleanup", help="Resolve duplicate emergencies and clear stale flags")
    cleanup.add_argument("--reporter", help="Only sweep this reporter's emergencies")

    stats = subparsers.add_parser("stats", help="Emergency counts for a group")
    stats.add_argument("--group", required=True, help="Group id")

    show = subparsers.add_parser("show", help="Print one emergency document")
    show.add_argument("emergency_id")

    config = subparsers.add_parser("config", help="Print the effective configuration")
    config.add_argument("--export", metavar="FILE", help="Write it to a .yaml, .yml or .json file instead")

    run = subparsers.add_parser("run", help="Run reconciliation and periodic cleanup")
    run.add_argument("--interval", type=float, help="Seconds between cleanup sweeps")
    return parser


async def run_command(args: argparse.Namespace) -> int:
    app = MusterPointApplication(args.config_dir)
    await app.initialize()
    try:
        if args.command == "cleanup":
            if args.reporter:
                reports = [await app.coordinator.cleanup_reporter(args.reporter)]
            else:
                reports = await app.coordinator.cleanup_all()
            _print_json([r.to_dict() for r in reports])
        elif args.command == "stats":
            _print_json(await app.coordinator.get_emergency_stats(args.group))
        elif args.command == "show":
            emergency = await app.coordinator.get_emergency(args.emergency_id)
            _print_json(emergency.to_dict())
        elif args.command == "config":
            if args.export:
                app.config_manager.export_config(args.export)
                print(f"Configuration exported to {args.export}")
            else:
                _print_json(app.config_manager.config)
        elif args.command == "run":
            await app.run_forever(args.interval)
        return 0
    except (EmergencyError, DatabaseError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await app.shutdown()


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True))


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point"""
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run_command(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nApplication interrupted")
        return 0


if __name__ == "__main__":
    sys.exit(main())
