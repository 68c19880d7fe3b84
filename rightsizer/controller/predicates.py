"""
Event filters: decide which cluster changes should trigger a policy reconcile
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client

from rightsizer.controller.workloads import WORKLOAD_HANDLERS, candidate_kinds, has_declared_resources
from rightsizer.core.exceptions import SelectorError
from rightsizer.core.quantity import parse_quantity
from rightsizer.core.selectors import selector_matches
from rightsizer.models.resource_models import RightSizingPolicy

logger = logging.getLogger(__name__)


def is_candidate_pod(pod: client.V1Pod) -> bool:
    """Running, owned by a controller, and declaring requests or limits somewhere"""
    if pod.status is None or pod.status.phase != "Running":
        return False
    if not pod.metadata.owner_references:
        return False
    return has_declared_resources(pod.spec.containers)


def namespace_in_scope(namespace: str, policy: RightSizingPolicy) -> bool:
    target = policy.spec.target
    if target.namespace and namespace != target.namespace:
        return False
    return namespace not in target.exclude_namespaces


def _selectors_match(
    labels: Optional[Dict[str, str]],
    namespace_labels: Optional[Dict[str, str]],
    policy: RightSizingPolicy,
) -> bool:
    target = policy.spec.target
    try:
        if not selector_matches(target.label_selector, labels):
            return False
        if target.namespace_selector is not None:
            if namespace_labels is None:
                return False
            return selector_matches(target.namespace_selector, namespace_labels)
    except SelectorError as e:
        logger.debug(f"Policy {policy.key} has an unusable selector: {e}")
        return False
    return True


def pod_matches_policy(
    pod: client.V1Pod, policy: RightSizingPolicy, namespace_labels: Optional[Dict[str, str]] = None
) -> bool:
    """Whether a pod falls inside a policy's target"""
    if not namespace_in_scope(pod.metadata.namespace, policy):
        return False
    if not _selectors_match(pod.metadata.labels, namespace_labels, policy):
        return False

    include = policy.spec.target.include_workload_types
    if include and not set(candidate_kinds(pod)) & set(include):
        return False
    return True


def workload_matches_policy(
    kind: str, obj: Any, policy: RightSizingPolicy, namespace_labels: Optional[Dict[str, str]] = None
) -> bool:
    """Whether a Deployment/StatefulSet/DaemonSet falls inside a policy's target"""
    if not namespace_in_scope(obj.metadata.namespace, policy):
        return False

    include = policy.spec.target.include_workload_types
    if include and kind not in include:
        return False

    handler = WORKLOAD_HANDLERS.get(kind)
    labels = handler.template_labels(obj) if handler else obj.metadata.labels
    return _selectors_match(labels, namespace_labels, policy)


def _normalized(values: Optional[Dict[str, Any]]) -> Tuple:
    normalized = []
    for name, quantity in sorted((values or {}).items()):
        try:
            normalized.append((name, round(parse_quantity(str(quantity)), 9)))
        except ValueError:
            normalized.append((name, str(quantity)))
    return tuple(normalized)


def containers_fingerprint(containers: Optional[List[client.V1Container]]) -> Tuple:
    """Container names with requests and limits by value, comparable across spellings"""
    fingerprint = []
    for container in containers or []:
        resources = container.resources
        fingerprint.append((
            container.name,
            _normalized(resources.requests if resources else None),
            _normalized(resources.limits if resources else None),
        ))
    return tuple(fingerprint)


def pod_fingerprint(pod: client.V1Pod) -> Tuple:
    return containers_fingerprint(pod.spec.containers)


def workload_fingerprint(obj: Any) -> Tuple:
    return containers_fingerprint(obj.spec.template.spec.containers)


def pod_update_is_relevant(old: client.V1Pod, new: client.V1Pod) -> bool:
    """Pod updates only matter when container resources changed"""
    return pod_fingerprint(old) != pod_fingerprint(new)


def workload_update_is_relevant(old: Any, new: Any) -> bool:
    """Workload updates only matter when pod-template container resources changed"""
    return workload_fingerprint(old) != workload_fingerprint(new)
