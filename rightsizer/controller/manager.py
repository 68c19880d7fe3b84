"""
Controller manager: work queue, reconcile workers and watch loops
"""
import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from kubernetes.client.rest import ApiException

from rightsizer.controller.predicates import (
    pod_fingerprint,
    pod_matches_policy,
    workload_fingerprint,
    workload_matches_policy,
)
from rightsizer.controller.reconciler import PolicyReconciler
from rightsizer.core.config import settings
from rightsizer.core.exceptions import ReconcileError
from rightsizer.core.kubernetes_client import K8sClient
from rightsizer.models.resource_models import RightSizingPolicy

logger = logging.getLogger(__name__)

WORKLOAD_WATCHES = {
    "deployments": "Deployment",
    "statefulsets": "StatefulSet",
    "daemonsets": "DaemonSet",
}


class WorkQueue:
    """Deduplicating queue that never hands the same key to two workers.

    A key added while it is being processed is queued again once the worker
    calls ``done``. Failed keys back off exponentially per key.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 300.0):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._timer_deadlines: Dict[str, float] = {}
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    def add(self, key: str):
        if self.shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.put_nowait(key)

    def add_after(self, key: str, delay: float):
        """Add key once delay seconds have passed; an earlier pending add wins"""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        if key in self._timers:
            if self._timer_deadlines[key] <= deadline:
                return
            self._timers[key].cancel()
        self._timer_deadlines[key] = deadline
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: str):
        self._timers.pop(key, None)
        self._timer_deadlines.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: str, max_delay: Optional[float] = None) -> float:
        """Requeue a failed key with per-key exponential backoff"""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        cap = min(max_delay, self.max_delay) if max_delay else self.max_delay
        delay = min(self.base_delay * 2 ** (failures - 1), cap)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str):
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[str]:
        """Next key to process, or None once the queue is shut down"""
        key = await self._queue.get()
        if key is None:
            return None
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: str):
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    def shutdown(self, workers: int = 1):
        self.shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._timer_deadlines.clear()
        for _ in range(workers):
            self._queue.put_nowait(None)


class ControllerManager:
    """Runs reconcile workers and feeds them from cluster watches"""

    def __init__(
        self,
        k8s_client: K8sClient,
        reconciler: PolicyReconciler,
        workers: Optional[int] = None,
        watch: bool = True,
    ):
        self.k8s_client = k8s_client
        self.reconciler = reconciler
        self.workers = workers or settings.max_concurrent_reconciles
        self.watch_enabled = watch
        self.queue: Optional[WorkQueue] = None
        self.policies: Dict[str, RightSizingPolicy] = {}
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker_tasks: List[asyncio.Task] = []
        self._event_tasks: Set[asyncio.Task] = set()
        self._watch_threads: List[threading.Thread] = []
        self._watches: Dict[str, Any] = {}
        # resource fingerprint per object uid, per watched resource
        self._last_seen: Dict[str, Dict[str, Tuple]] = {}
        self._stopping = threading.Event()
        self.running = False

    async def start(self):
        """List existing policies, start workers and open watches"""
        self.loop = asyncio.get_running_loop()
        self.queue = WorkQueue(max_delay=float(settings.error_requeue_seconds))
        self._stopping.clear()

        for raw in await self.k8s_client.list_policies():
            policy = RightSizingPolicy.from_k8s(raw)
            self.policies[policy.key] = policy
            self.queue.add(policy.key)
        logger.info(f"Found {len(self.policies)} PodRightSizing policies")

        self._worker_tasks = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}") for i in range(self.workers)
        ]

        if self.watch_enabled:
            for resource in ["policies", "pods", *WORKLOAD_WATCHES]:
                thread = threading.Thread(
                    target=self._watch_loop, args=(resource,), name=f"watch-{resource}", daemon=True
                )
                thread.start()
                self._watch_threads.append(thread)

        self.running = True
        logger.info(f"Controller manager started with {self.workers} workers")

    async def stop(self):
        """Stop watches and drain workers"""
        logger.info("Stopping controller manager")
        self._stopping.set()
        for w in list(self._watches.values()):
            w.stop()
        if self.queue is not None:
            self.queue.shutdown(workers=len(self._worker_tasks))
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        for task in list(self._event_tasks):
            task.cancel()
        self._worker_tasks = []
        self.running = False

    def enqueue(self, namespace: str, name: str):
        self.queue.add(f"{namespace}/{name}")

    # Workers

    async def _worker(self, index: int):
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"Worker {index} exiting")
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: str):
        """Run one reconcile pass for key and schedule its next one"""
        namespace, name = key.split("/", 1)
        timeout = settings.reconcile_timeout_seconds
        try:
            if timeout:
                result = await asyncio.wait_for(self.reconciler.reconcile(namespace, name), timeout)
            else:
                result = await self.reconciler.reconcile(namespace, name)
        except asyncio.TimeoutError:
            await self.reconciler.record_failure(namespace, name, f"Reconciliation timed out after {timeout}s")
            delay = self.queue.add_rate_limited(key, max_delay=self.reconciler.error_requeue)
            logger.error(f"Reconcile of {key} timed out, retrying in {delay:.0f}s")
            return
        except ReconcileError as e:
            delay = self.queue.add_rate_limited(key, max_delay=e.requeue_after)
            logger.error(f"Reconcile of {key} failed, retrying in {delay:.0f}s: {e}")
            return
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(f"Unexpected error reconciling {key}, retrying in {delay:.0f}s: {e}", exc_info=True)
            return

        self.queue.forget(key)
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)

    # Watches

    def _watch_loop(self, resource: str):
        resource_version = None
        while not self._stopping.is_set():
            try:
                if resource_version is None and resource != "policies":
                    self.loop.call_soon_threadsafe(self.forget_seen, resource)
                w, stream = self.k8s_client.watch_stream(resource, resource_version)
                self._watches[resource] = w
                for event in stream:
                    if self._stopping.is_set():
                        w.stop()
                        break
                    if event.get("type") == "ERROR":
                        logger.warning(f"Watch on {resource} returned error: {event.get('raw_object')}")
                        resource_version = None
                        break
                    self.loop.call_soon_threadsafe(self.dispatch, resource, event["type"], event["object"])
                else:
                    resource_version = w.resource_version
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"Watch on {resource} expired, relisting")
                    resource_version = None
                    continue
                logger.error(f"Watch on {resource} failed: {e}")
                self._stopping.wait(5)
            except Exception as e:
                logger.error(f"Watch on {resource} interrupted: {e}")
                self._stopping.wait(5)

    def dispatch(self, resource: str, event_type: str, obj: Any):
        """Route a watch event; runs on the event loop"""
        if resource == "policies":
            self.on_policy_event(event_type, obj)
            return
        if resource == "pods":
            coro = self.on_pod_event(event_type, obj)
        else:
            coro = self.on_workload_event(WORKLOAD_WATCHES[resource], event_type, obj)
        task = asyncio.ensure_future(coro)
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    def on_policy_event(self, event_type: str, obj: Dict[str, Any]):
        policy = RightSizingPolicy.from_k8s(obj)
        key = policy.key

        if event_type == "DELETED":
            self.policies.pop(key, None)
            self.queue.add(key)
            return

        previous = self.policies.get(key)
        self.policies[key] = policy
        if (
            event_type == "MODIFIED"
            and previous is not None
            and previous.metadata.generation == policy.metadata.generation
        ):
            # status-only update written by this controller
            return
        logger.info(f"PodRightSizing {key} {event_type.lower()}, enqueueing")
        self.queue.add(key)

    async def _namespace_labels(self, namespace: str) -> Optional[Dict[str, str]]:
        if not any(p.spec.target.namespace_selector is not None for p in self.policies.values()):
            return None
        ns = await self.k8s_client.get_namespace(namespace)
        return (ns.metadata.labels or {}) if ns is not None else None

    def _resources_changed(self, resource: str, uid: str, event_type: str, fingerprint: Tuple) -> bool:
        """Track container resources per object uid and report whether an update changed them"""
        seen = self._last_seen.setdefault(resource, {})
        previous = seen.get(uid)
        seen[uid] = fingerprint
        if event_type == "ADDED" or previous is None:
            return event_type == "ADDED"
        return previous != fingerprint

    def forget_seen(self, resource: str):
        """Drop tracked fingerprints before a relist replays the current objects"""
        self._last_seen.pop(WORKLOAD_WATCHES.get(resource, resource), None)

    async def on_pod_event(self, event_type: str, pod: Any):
        uid = pod.metadata.uid
        if event_type == "DELETED":
            self._last_seen.get("pods", {}).pop(uid, None)
            return
        if not self._resources_changed("pods", uid, event_type, pod_fingerprint(pod)):
            return

        namespace_labels = await self._namespace_labels(pod.metadata.namespace)
        for key, policy in list(self.policies.items()):
            if pod_matches_policy(pod, policy, namespace_labels):
                self.queue.add(key)

    async def on_workload_event(self, kind: str, event_type: str, obj: Any):
        uid = obj.metadata.uid
        if event_type == "DELETED":
            self._last_seen.get(kind, {}).pop(uid, None)
            return
        if not self._resources_changed(kind, uid, event_type, workload_fingerprint(obj)):
            return

        namespace_labels = await self._namespace_labels(obj.metadata.namespace)
        for key, policy in list(self.policies.items()):
            if workload_matches_policy(kind, obj, policy, namespace_labels):
                self.queue.add(key)
