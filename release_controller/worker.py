import argparse
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from release_controller.config import SETTINGS
from release_controller.controller import ControllerSettings, ProjectReconciler, ReconcileResult
from release_controller.errors import ReconcileError
from release_controller.models import Project
from release_controller.store import build_object_store


logger = logging.getLogger("relctl.worker")

ProjectKey = Tuple[str, str]


class Worker:
    """Timer-driven reconcile loop.

    Projects run concurrently on a thread pool; a sweep waits for all of its
    passes, so one Project never has two passes in flight. Each Project is due
    again after its requeue delay, or the idle interval when none was asked for.
    """

    def __init__(
        self,
        controller: ProjectReconciler,
        store,
        namespaces: Sequence[str],
        interval_seconds: float = 15.0,
        concurrency: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.controller = controller
        self.store = store
        self.namespaces = list(namespaces)
        self.interval_seconds = interval_seconds
        self.concurrency = max(concurrency, 1)
        self.clock = clock
        self.next_due: Dict[ProjectKey, float] = {}

    def due_projects(self) -> List[ProjectKey]:
        now = self.clock()
        keys: List[ProjectKey] = []
        listed = set()
        for namespace in self.namespaces:
            for project in self.store.list(Project, namespace):
                key = (namespace, project.metadata.name)
                listed.add(key)
                if self.next_due.get(key, 0.0) <= now:
                    keys.append(key)
        for key in list(self.next_due):
            if key not in listed:
                del self.next_due[key]
        return keys

    def _run(self, key: ProjectKey) -> Optional[ReconcileResult]:
        namespace, name = key
        try:
            return self.controller.reconcile(namespace, name)
        except Exception:
            logger.exception("worker.pass_crashed namespace=%s project=%s", namespace, name)
            return None

    def run_once(self) -> Dict[ProjectKey, Optional[ReconcileResult]]:
        keys = self.due_projects()
        results: Dict[ProjectKey, Optional[ReconcileResult]] = {}
        if not keys:
            return results
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {key: executor.submit(self._run, key) for key in keys}
            for key, future in futures.items():
                results[key] = future.result()
        now = self.clock()
        for key, result in results.items():
            if result is None:
                delay = self.controller.settings.medium_requeue_seconds
            else:
                delay = result.requeue_after or self.interval_seconds
            self.next_due[key] = now + delay
        return results

    def sleep_seconds(self) -> float:
        if not self.next_due:
            return self.interval_seconds
        wait = min(self.next_due.values()) - self.clock()
        return min(max(wait, 0.5), self.interval_seconds)

    def run_forever(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.run_once()
            except ReconcileError as exc:
                logger.warning("worker.sweep_failed error=%s", exc)
            stop.wait(self.sleep_seconds())


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the release reconcile loop.")
    parser.add_argument(
        "--namespace",
        action="append",
        dest="namespaces",
        help="Namespace to watch (repeatable; defaults to RELCTL_WORKER_NAMESPACES)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=SETTINGS.worker_interval_seconds)
    parser.add_argument("--concurrency", type=int, default=SETTINGS.worker_concurrency)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    store = build_object_store(SETTINGS.ddb_table, SETTINGS.db_path)
    controller = ProjectReconciler(store, settings=ControllerSettings.from_settings(SETTINGS))
    worker = Worker(
        controller,
        store,
        args.namespaces or SETTINGS.worker_namespaces,
        interval_seconds=args.interval,
        concurrency=args.concurrency,
    )

    if args.once:
        results = worker.run_once()
        failed = [key for key, result in results.items() if result is None or not result.ready]
        for namespace, name in failed:
            print(f"reconcile failed: {namespace}/{name}")
        print(f"reconciled {len(results)} project(s), {len(failed)} failed")
        return 1 if failed else 0

    stop = threading.Event()
    try:
        worker.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
