"""
Reconciler for PodRightSizing policies
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rightsizer.controller.predicates import is_candidate_pod
from rightsizer.controller.workloads import OwnerResolver, WorkloadRef, apply_recommendation, pod_resources
from rightsizer.core.config import settings
from rightsizer.core.durations import parse_duration, utc_now
from rightsizer.core.exceptions import (
    NotFoundError,
    PolicyValidationError,
    ReconcileError,
    RightSizerError,
    SelectorError,
    StatusConflictError,
    WorkloadUpdateError,
)
from rightsizer.core.kubernetes_client import K8sClient
from rightsizer.core.selectors import selector_to_string
from rightsizer.models.resource_models import (
    Condition,
    Phase,
    PodRecommendation,
    RightSizingPolicy,
    UpdateStrategy,
)
from rightsizer.services.metrics_provider import MetricsProviderFactory
from rightsizer.services.recommendation_engine import RecommendationEngine
from rightsizer.services.validation_service import ValidationService

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_WINDOW = timedelta(days=7)
DEFAULT_ANALYSIS_INTERVAL = timedelta(hours=24)
SHORT_INTERVAL = timedelta(hours=1)
LONG_INTERVAL = timedelta(hours=24)

READY_CONDITION = "Ready"


@dataclass
class ReconcileResult:
    """Outcome of a reconcile pass; requeue_after is in seconds"""
    requeue_after: Optional[float] = None


def analysis_interval(policy: RightSizingPolicy) -> timedelta:
    """Minimum time between two analyses of the same policy"""
    try:
        window = parse_duration(policy.spec.analysis_window)
    except ValueError:
        return DEFAULT_ANALYSIS_INTERVAL
    if window < timedelta(hours=24):
        return SHORT_INTERVAL
    return window / 24


def requeue_interval(policy: RightSizingPolicy) -> timedelta:
    try:
        window = parse_duration(policy.spec.analysis_window)
    except ValueError:
        return SHORT_INTERVAL
    return LONG_INTERVAL if window >= timedelta(hours=24) else SHORT_INTERVAL


def analysis_window(policy: RightSizingPolicy) -> timedelta:
    try:
        return parse_duration(policy.spec.analysis_window)
    except ValueError:
        logger.info(f"Using default analysis window of 7d for {policy.key}")
        return DEFAULT_ANALYSIS_WINDOW


class PolicyReconciler:
    """Runs one analysis pass over a policy and records the outcome in its status"""

    def __init__(
        self,
        k8s_client: K8sClient,
        metrics_factory: MetricsProviderFactory,
        engine: Optional[RecommendationEngine] = None,
        validator: Optional[ValidationService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.k8s_client = k8s_client
        self.metrics_factory = metrics_factory
        self.engine = engine or RecommendationEngine()
        self.validator = validator or ValidationService()
        self.clock = clock
        self.error_requeue = float(settings.error_requeue_seconds)

    def should_run_analysis(self, policy: RightSizingPolicy) -> bool:
        """Due once the interval has passed; a policy in Error is retried right away"""
        last = policy.status.last_analysis_time
        if last is None or policy.status.phase == Phase.ERROR.value:
            return True
        return self.clock() - last >= analysis_interval(policy)

    def _not_due_result(self, policy: RightSizingPolicy) -> ReconcileResult:
        remaining = analysis_interval(policy) - (self.clock() - policy.status.last_analysis_time)
        delay = min(remaining, requeue_interval(policy))
        return ReconcileResult(requeue_after=max(delay.total_seconds(), 1.0))

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one pass for the policy namespace/name.

        A deleted policy is a no-op. Failures are written to the policy status
        and re-raised as ReconcileError carrying the requeue delay.
        """
        logger.info(f"Starting reconciliation of {namespace}/{name}")
        try:
            return await self._reconcile(namespace, name)
        except NotFoundError:
            logger.info(f"PodRightSizing {namespace}/{name} not found, ignoring since object must be deleted")
            return ReconcileResult()
        except ReconcileError:
            raise
        except Exception as e:
            logger.error(f"Reconciliation of {namespace}/{name} failed: {e}", exc_info=True)
            await self.record_failure(namespace, name, f"Reconciliation failed: {e}")
            raise ReconcileError(str(e), requeue_after=self.error_requeue) from e

    async def record_failure(self, namespace: str, name: str, message: str):
        """Move a policy to Error from whatever phase a failed pass left it in"""
        try:
            raw = await self.k8s_client.get_policy(namespace, name)
            if raw is None:
                return
            policy = RightSizingPolicy.from_k8s(raw)
        except (ApiException, ValueError) as e:
            logger.error(f"Failed to read {namespace}/{name} to record failure: {e}")
            return
        await self._fail(policy, message)

    async def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        raw = await self.k8s_client.get_policy(namespace, name)
        if raw is None:
            raise NotFoundError(f"{namespace}/{name}")
        policy = RightSizingPolicy.from_k8s(raw)

        if not self.should_run_analysis(policy):
            logger.info(f"Skipping analysis of {policy.key} - not scheduled to run yet")
            return self._not_due_result(policy)

        try:
            self.validator.ensure_valid(policy)
        except PolicyValidationError as e:
            await self._fail(policy, f"Invalid policy: {e}")
            raise ReconcileError(str(e), requeue_after=self.error_requeue) from e

        policy = await self._update_status(
            policy, phase=Phase.ANALYZING.value, message="Starting resource analysis"
        )

        resolver = OwnerResolver(self.k8s_client)
        try:
            targets = await self.discover_target_pods(policy, resolver)
        except (SelectorError, ApiException) as e:
            logger.error(f"Failed to discover target pods for {policy.key}: {e}")
            await self._fail(policy, f"Failed to discover pods: {e}")
            raise ReconcileError(f"Failed to discover pods: {e}", requeue_after=self.error_requeue) from e

        logger.info(f"Discovered {len(targets)} target pods for {policy.key}")

        if not targets:
            await self._update_status(
                policy,
                phase=Phase.COMPLETED.value,
                message="No matching pods found",
                targeted_pods=0,
                updated_pods=0,
                recommendations=[],
                conditions=self._ready_conditions(policy, True, "NoTargets", "No matching pods found"),
            )
            return ReconcileResult(requeue_after=requeue_interval(policy).total_seconds())

        groups = self.group_by_workload(targets)
        policy = await self._update_status(
            policy,
            phase=Phase.RECOMMENDING.value,
            message="Generating recommendations",
            targeted_pods=len(targets),
        )

        recommendations: List[PodRecommendation] = []
        for workload, pods in groups.items():
            recommendations.extend(await self.generate_workload_recommendations(policy, workload, pods))

        analyzed_at = self.clock()

        if policy.spec.dry_run:
            message = f"Analysis completed. Found {len(recommendations)} recommendations (dry-run mode)"
            await self._update_status(
                policy,
                phase=Phase.COMPLETED.value,
                message=message,
                recommendations=recommendations,
                last_analysis_time=analyzed_at,
                updated_pods=0,
                conditions=self._ready_conditions(policy, True, "AnalysisCompleted", message),
            )
            logger.info(f"Reconciliation of {policy.key} completed: {len(recommendations)} recommendations (dry-run)")
            return ReconcileResult(requeue_after=requeue_interval(policy).total_seconds())

        policy = await self._update_status(
            policy,
            phase=Phase.UPDATING.value,
            message="Applying recommendations",
            recommendations=recommendations,
            last_analysis_time=analyzed_at,
        )

        updated, failures = await self.apply_recommendations(policy, recommendations)
        updated_at = self.clock()

        if failures:
            message = f"Failed to apply recommendations: {'; '.join(failures)}"
            await self._update_status(
                policy,
                phase=Phase.ERROR.value,
                message=message,
                updated_pods=updated,
                last_update_time=updated_at,
                conditions=self._ready_conditions(policy, False, "UpdateFailed", message),
            )
            raise ReconcileError(message, requeue_after=self.error_requeue)

        message = f"Analysis completed. Found {len(recommendations)} recommendations"
        await self._update_status(
            policy,
            phase=Phase.COMPLETED.value,
            message=message,
            updated_pods=updated,
            last_update_time=updated_at,
            conditions=self._ready_conditions(policy, True, "AnalysisCompleted", message),
        )
        logger.info(
            f"Reconciliation of {policy.key} completed: {len(recommendations)} recommendations, {updated} updated"
        )
        return ReconcileResult(requeue_after=requeue_interval(policy).total_seconds())

    async def discover_target_pods(
        self, policy: RightSizingPolicy, resolver: OwnerResolver
    ) -> List[Tuple[client.V1Pod, WorkloadRef]]:
        """Pods inside the policy's target, each paired with its resolved workload"""
        target = policy.spec.target
        excluded = set(target.exclude_namespaces)
        include = set(target.include_workload_types)
        label_selector = selector_to_string(target.label_selector)

        if target.namespace_selector is not None:
            namespace_selector = selector_to_string(target.namespace_selector)
            namespaces: List[Optional[str]] = [
                ns.metadata.name for ns in await self.k8s_client.list_namespaces(namespace_selector)
            ]
        elif target.namespace:
            namespaces = [target.namespace]
        else:
            namespaces = [None]

        targets = []
        for namespace in namespaces:
            if namespace is not None and namespace in excluded:
                continue
            for pod in await self.k8s_client.list_pods(namespace, label_selector):
                if pod.metadata.namespace in excluded or not is_candidate_pod(pod):
                    continue
                workload = await resolver.resolve(pod)
                if workload is None:
                    continue
                if include and workload.kind not in include:
                    continue
                targets.append((pod, workload))
        return targets

    @staticmethod
    def group_by_workload(
        targets: List[Tuple[client.V1Pod, WorkloadRef]]
    ) -> "OrderedDict[WorkloadRef, List[client.V1Pod]]":
        groups: "OrderedDict[WorkloadRef, List[client.V1Pod]]" = OrderedDict()
        for pod, workload in targets:
            groups.setdefault(workload, []).append(pod)
        return groups

    async def generate_workload_recommendations(
        self, policy: RightSizingPolicy, workload: WorkloadRef, pods: List[client.V1Pod]
    ) -> List[PodRecommendation]:
        """Recommendations for one workload; failures are logged and yield nothing"""
        window = analysis_window(policy)
        logger.info(f"Collecting metrics for workload {workload.key} over {window}")
        try:
            provider = await self.metrics_factory.for_policy(policy)
            metrics = await provider.get_workload_metrics(workload.namespace, workload.name, workload.kind, window)
            if not metrics.pods:
                logger.info(f"No metrics found for workload {workload.key}")
                return []

            current = {pod.metadata.name: pod_resources(pod) for pod in pods}
            return self.engine.generate_recommendations(
                metrics,
                policy.spec.thresholds,
                current_resources=current,
                default_current=pod_resources(pods[0]),
            )
        except Exception as e:
            logger.error(f"Failed to generate recommendations for workload {workload.key}: {e}")
            return []

    async def apply_recommendations(
        self, policy: RightSizingPolicy, recommendations: List[PodRecommendation]
    ) -> Tuple[int, List[str]]:
        """Apply the first recommendation of each workload as its template.

        Returns the number of updated workloads and the failure messages of the
        workloads that could not be updated.
        """
        update_policy = policy.spec.update_policy
        if update_policy.strategy == UpdateStrategy.MANUAL.value:
            logger.info(f"Manual strategy for {policy.key} - skipping workload updates")
            return 0, []

        by_workload: "OrderedDict[WorkloadRef, List[PodRecommendation]]" = OrderedDict()
        for recommendation in recommendations:
            reference = recommendation.pod_reference
            workload = WorkloadRef(reference.namespace, reference.workload_type, reference.workload_name)
            by_workload.setdefault(workload, []).append(recommendation)

        updated = 0
        failures = []
        for workload, workload_recommendations in by_workload.items():
            logger.info(
                f"Applying recommendations for workload {workload.key} ({len(workload_recommendations)} recommendations)"
            )
            try:
                updated += await apply_recommendation(
                    self.k8s_client,
                    workload,
                    workload_recommendations[0].recommended_resources,
                    update_policy,
                )
            except WorkloadUpdateError as e:
                logger.error(f"Failed to apply recommendations to {workload.key}: {e}")
                failures.append(str(e))
        return updated, failures

    def _ready_conditions(
        self, policy: RightSizingPolicy, ready: bool, reason: str, message: str
    ) -> List[Condition]:
        status = "True" if ready else "False"
        conditions = [c for c in policy.status.conditions if c.type != READY_CONDITION]
        previous = next((c for c in policy.status.conditions if c.type == READY_CONDITION), None)
        transition = previous.last_transition_time if previous and previous.status == status else None
        conditions.append(Condition(
            type=READY_CONDITION,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=transition or self.clock(),
            observed_generation=policy.metadata.generation,
        ))
        return conditions

    async def _fail(self, policy: RightSizingPolicy, message: str):
        """Record an Error phase; a failing status write is logged, the caller raises"""
        try:
            await self._update_status(
                policy,
                phase=Phase.ERROR.value,
                message=message,
                conditions=self._ready_conditions(policy, False, "ReconcileFailed", message),
            )
        except (RightSizerError, ApiException) as e:
            logger.error(f"Failed to update phase of {policy.key} to Error: {e}")

    async def _update_status(self, policy: RightSizingPolicy, **changes: Any) -> RightSizingPolicy:
        """Write status field changes; on conflict refetch, re-apply and retry"""
        current = policy
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.status_update_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(StatusConflictError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Status conflict on {policy.key}, refetching")
                    raw = await self.k8s_client.get_policy(policy.metadata.namespace, policy.metadata.name)
                    if raw is None:
                        raise NotFoundError(policy.key)
                    current = RightSizingPolicy.from_k8s(raw)

                for field, value in changes.items():
                    setattr(current.status, field, value)
                result = await self.k8s_client.replace_policy_status(current.to_k8s())
                return RightSizingPolicy.from_k8s(result) if result else current
        return current
