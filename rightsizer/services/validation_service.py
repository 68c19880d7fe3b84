"""
Admission rules for PodRightSizing policies
"""
import logging
from datetime import timedelta
from typing import List

from celery.schedules import ParseException, crontab

from rightsizer.core.durations import parse_duration
from rightsizer.core.exceptions import PolicyValidationError
from rightsizer.core.quantity import parse_quantity
from rightsizer.models.resource_models import (
    AuthType,
    MetricsSourceType,
    RightSizingPolicy,
    UpdateStrategy,
    WorkloadKind,
)

logger = logging.getLogger(__name__)

MIN_ANALYSIS_WINDOW = timedelta(hours=1)
MAX_ANALYSIS_WINDOW = timedelta(days=90)

SCHEDULE_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}


def validate_schedule(schedule: str) -> None:
    """Raise ValueError unless schedule is a five-field cron expression or descriptor"""
    schedule = schedule.strip()
    if schedule.startswith("@every "):
        if parse_duration(schedule[len("@every "):]) <= timedelta(0):
            raise ValueError("@every interval must be positive")
        return
    schedule = SCHEDULE_DESCRIPTORS.get(schedule, schedule)
    if schedule.startswith("@"):
        raise ValueError(f"unrecognized descriptor: {schedule}")

    fields = schedule.split()
    if len(fields) != 5:
        raise ValueError(f"expected exactly 5 fields, found {len(fields)}: {schedule!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    try:
        crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ParseException, ValueError) as e:
        raise ValueError(str(e)) from e


class ValidationService:
    """Checks a policy against its admission rules"""

    def validate_policy(self, policy: RightSizingPolicy) -> List[str]:
        """Return every rule violation as ``<field path>: <message>``"""
        errors: List[str] = []
        errors.extend(self._validate_target(policy))
        errors.extend(self._validate_thresholds(policy))
        errors.extend(self._validate_analysis_window(policy))
        errors.extend(self._validate_schedule(policy))
        errors.extend(self._validate_update_policy(policy))
        errors.extend(self._validate_metrics_source(policy))
        return errors

    def ensure_valid(self, policy: RightSizingPolicy) -> None:
        errors = self.validate_policy(policy)
        if errors:
            logger.warning(f"Policy {policy.key} failed validation: {errors}")
            raise PolicyValidationError(errors)

    def _validate_target(self, policy: RightSizingPolicy) -> List[str]:
        errors = []
        target = policy.spec.target

        if not target.namespace and target.label_selector is None and target.namespace_selector is None:
            errors.append(
                "spec.target: must specify at least one of: namespace, labelSelector, or namespaceSelector"
            )
        if target.namespace and target.namespace_selector is not None:
            errors.append("spec.target.namespace: cannot specify both namespace and namespaceSelector")

        valid_types = {kind.value for kind in WorkloadKind}
        for i, workload_type in enumerate(target.include_workload_types):
            if workload_type not in valid_types:
                errors.append(
                    f"spec.target.includeWorkloadTypes[{i}]: {workload_type!r} must be one of: "
                    "Deployment, StatefulSet, DaemonSet, Job, CronJob"
                )
        return errors

    def _validate_thresholds(self, policy: RightSizingPolicy) -> List[str]:
        errors = []
        thresholds = policy.spec.thresholds

        for name, value in (
            ("cpuUtilizationPercentile", thresholds.cpu_utilization_percentile),
            ("memoryUtilizationPercentile", thresholds.memory_utilization_percentile),
        ):
            if value < 0 or value > 100:
                errors.append(f"spec.thresholds.{name}: {value} must be between 0 and 100")

        if thresholds.safety_margin < 0 or thresholds.safety_margin > 1000:
            errors.append(
                f"spec.thresholds.safetyMargin: {thresholds.safety_margin} must be between 0 and 1000 (percentage)"
            )
        if thresholds.min_change_threshold < 0 or thresholds.min_change_threshold > 100:
            errors.append(
                f"spec.thresholds.minChangeThreshold: {thresholds.min_change_threshold} "
                "must be between 0 and 100 (percentage)"
            )

        for resource, minimum, maximum in (
            ("Cpu", thresholds.min_cpu, thresholds.max_cpu),
            ("Memory", thresholds.min_memory, thresholds.max_memory),
        ):
            try:
                min_value = parse_quantity(minimum) if minimum else None
                max_value = parse_quantity(maximum) if maximum else None
            except ValueError as e:
                errors.append(f"spec.thresholds.min{resource}/max{resource}: {e}")
                continue
            if min_value and max_value and min_value > max_value:
                errors.append(
                    f"spec.thresholds.min{resource}: min{resource} cannot be greater than max{resource}"
                )
        return errors

    def _validate_analysis_window(self, policy: RightSizingPolicy) -> List[str]:
        window = policy.spec.analysis_window
        if not window:
            return []
        try:
            duration = parse_duration(window)
        except ValueError as e:
            return [f"spec.analysisWindow: invalid duration format: {e}"]

        errors = []
        if duration < MIN_ANALYSIS_WINDOW:
            errors.append("spec.analysisWindow: analysis window must be at least 1 hour")
        if duration > MAX_ANALYSIS_WINDOW:
            errors.append("spec.analysisWindow: analysis window must not exceed 90 days")
        return errors

    def _validate_schedule(self, policy: RightSizingPolicy) -> List[str]:
        if not policy.spec.schedule:
            return []
        try:
            validate_schedule(policy.spec.schedule)
        except ValueError as e:
            return [f"spec.schedule: invalid cron expression: {e}"]
        return []

    def _validate_update_policy(self, policy: RightSizingPolicy) -> List[str]:
        errors = []
        update_policy = policy.spec.update_policy

        if update_policy.strategy and update_policy.strategy not in {s.value for s in UpdateStrategy}:
            errors.append(
                f"spec.updatePolicy.strategy: {update_policy.strategy!r} must be one of: immediate, gradual, manual"
            )
        if update_policy.backoff_limit < 0:
            errors.append(f"spec.updatePolicy.backoffLimit: {update_policy.backoff_limit} must be non-negative")
        if update_policy.min_stability_period:
            try:
                parse_duration(update_policy.min_stability_period)
            except ValueError as e:
                errors.append(f"spec.updatePolicy.minStabilityPeriod: invalid duration format: {e}")
        return errors

    def _validate_metrics_source(self, policy: RightSizingPolicy) -> List[str]:
        errors = []
        source = policy.spec.metrics_source

        if source.type and source.type not in {t.value for t in MetricsSourceType}:
            errors.append(f"spec.metricsSource.type: {source.type!r} must be one of: prometheus, metrics-server")

        prometheus = source.prometheus_config
        if source.type == MetricsSourceType.PROMETHEUS.value and prometheus is not None:
            if not prometheus.url:
                errors.append(
                    "spec.metricsSource.prometheusConfig.url: "
                    "Prometheus URL is required when using prometheus metrics source"
                )
            auth = prometheus.auth_config
            if auth is not None:
                if auth.type not in {t.value for t in AuthType}:
                    errors.append(
                        f"spec.metricsSource.prometheusConfig.authConfig.type: {auth.type!r} "
                        "must be one of: none, basic, bearer"
                    )
                if auth.type != AuthType.NONE.value and auth.secret_ref is None:
                    errors.append(
                        "spec.metricsSource.prometheusConfig.authConfig.secretRef: "
                        "secretRef is required when using basic or bearer authentication"
                    )
        return errors
