"""
Kubernetes API access for kubemend.

The official client is synchronous; every call runs in the default executor
under a timeout and failures are classified into transient and terminal
errors.
"""

import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional, Tuple

import kubernetes
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from ..config import ACTION_PLURAL, CRD_GROUP, CRD_VERSION, POLICY_PLURAL
from ..exceptions import ErrorContext, TerminalClusterError, TransientClusterError, classify_api_exception
from ..metrics import set_component_health
from ..models import HealingAction, HealingPolicy, TargetRef

LOG = logging.getLogger(__name__)

# kind -> (api attribute, method suffix)
NAMESPACED_KINDS: Dict[str, Tuple[str, str]] = {
    "Pod": ("core_api", "pod"),
    "Service": ("core_api", "service"),
    "PersistentVolumeClaim": ("core_api", "persistent_volume_claim"),
    "ConfigMap": ("core_api", "config_map"),
    "Deployment": ("apps_api", "deployment"),
    "StatefulSet": ("apps_api", "stateful_set"),
    "DaemonSet": ("apps_api", "daemon_set"),
    "ReplicaSet": ("apps_api", "replica_set"),
}

CLUSTER_KINDS: Dict[str, Tuple[str, str]] = {
    "Node": ("core_api", "node"),
    "PersistentVolume": ("core_api", "persistent_volume"),
}

SCALABLE_KINDS = frozenset({"Deployment", "StatefulSet", "ReplicaSet"})


def load_kube_config():
    """Load in-cluster config, falling back to the local kubeconfig"""
    try:
        kubernetes.config.load_incluster_config()
        LOG.info("Loaded in-cluster Kubernetes config")
    except ConfigException:
        kubernetes.config.load_kube_config()
        LOG.info("Loaded local Kubernetes config")


class ClusterClient:
    """Async facade over the Kubernetes API keyed by (kind, namespace, name)"""

    def __init__(self, api_client: Optional[kubernetes.client.ApiClient] = None, call_timeout: float = 30.0):
        self.api_client = api_client or kubernetes.client.ApiClient()
        self.core_api = kubernetes.client.CoreV1Api(self.api_client)
        self.apps_api = kubernetes.client.AppsV1Api(self.api_client)
        self.custom_api = kubernetes.client.CustomObjectsApi(self.api_client)
        self.call_timeout = call_timeout

    async def call(self, operation: str, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                timeout=self.call_timeout,
            )
        except (ApiException, asyncio.TimeoutError, Urllib3HTTPError) as e:
            error = classify_api_exception(e, operation)
            LOG.debug(f"Kubernetes call {operation} failed: {error}")
            if getattr(error, "status", None) is None or error.status >= 500:
                set_component_health("kubernetes", False)
            raise error from e
        set_component_health("kubernetes", True)
        return result

    def _method(self, verb: str, kind: str):
        if kind in NAMESPACED_KINDS:
            api, suffix = NAMESPACED_KINDS[kind]
            return getattr(getattr(self, api), f"{verb}_namespaced_{suffix}"), True
        if kind in CLUSTER_KINDS:
            api, suffix = CLUSTER_KINDS[kind]
            return getattr(getattr(self, api), f"{verb}_{suffix}"), False
        raise TerminalClusterError(f"Unsupported resource kind {kind}", context={"verb": verb})

    def _serialize(self, obj) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    async def _invoke(self, verb: str, ref: TargetRef, **kwargs):
        method, namespaced = self._method(verb, ref.kind)
        if namespaced:
            kwargs["namespace"] = ref.namespace
        with ErrorContext(f"{verb} {ref.kind}", "kubernetes").add_context(target=ref.key):
            return await self.call(f"{verb}:{ref.key}", method, name=ref.name, **kwargs)

    # ------------------------------------------------------------------
    # Object operations
    # ------------------------------------------------------------------

    async def get(self, ref: TargetRef) -> Dict[str, Any]:
        return self._serialize(await self._invoke("read", ref))

    async def list_targets(self, kind: str, namespace: Optional[str], label_selector: str = "") -> List[Dict[str, Any]]:
        if kind in NAMESPACED_KINDS:
            api, suffix = NAMESPACED_KINDS[kind]
            method = getattr(getattr(self, api), f"list_namespaced_{suffix}")
            result = await self.call(f"list:{kind}/{namespace}", method,
                                     namespace=namespace, label_selector=label_selector)
        else:
            method, _ = self._method("list", kind)
            result = await self.call(f"list:{kind}", method, label_selector=label_selector)
        return [self._serialize(item) for item in result.items]

    async def list_events(self, namespace: Optional[str], field_selector: str = "") -> List[Dict[str, Any]]:
        """Core events in ``namespace``, or across all namespaces when empty"""
        if namespace:
            result = await self.call(f"list:Event/{namespace}", self.core_api.list_namespaced_event,
                                     namespace=namespace, field_selector=field_selector)
        else:
            result = await self.call("list:Event", self.core_api.list_event_for_all_namespaces,
                                     field_selector=field_selector)
        return [self._serialize(item) for item in result.items]

    async def patch(self, ref: TargetRef, body) -> Dict[str, Any]:
        return self._serialize(await self._invoke("patch", ref, body=body))

    async def replace(self, ref: TargetRef, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._serialize(await self._invoke("replace", ref, body=body))

    async def delete(self, ref: TargetRef, grace_period_seconds: Optional[int] = None,
                     propagation_policy: Optional[str] = None) -> None:
        options = kubernetes.client.V1DeleteOptions(
            grace_period_seconds=grace_period_seconds,
            propagation_policy=propagation_policy,
        )
        await self._invoke("delete", ref, body=options)

    async def read_replicas(self, ref: TargetRef) -> int:
        method = self._scale_method("read", ref)
        scale = await self.call(f"read-scale:{ref.key}", method, name=ref.name, namespace=ref.namespace)
        return scale.spec.replicas or 0

    async def scale(self, ref: TargetRef, replicas: int) -> None:
        method = self._scale_method("patch", ref)
        await self.call(f"patch-scale:{ref.key}", method, name=ref.name, namespace=ref.namespace,
                        body={"spec": {"replicas": replicas}})

    def _scale_method(self, verb: str, ref: TargetRef):
        if ref.kind not in SCALABLE_KINDS:
            raise TerminalClusterError(f"{ref.kind} cannot be scaled", context={"target": ref.key})
        return getattr(self.apps_api, f"{verb}_namespaced_{NAMESPACED_KINDS[ref.kind][1]}_scale")


class ResourceRepository:
    """Reads policies and reads/writes HealingAction resources"""

    def __init__(self, client: ClusterClient):
        self.client = client

    async def list_policies(self, namespace: Optional[str] = None) -> List[HealingPolicy]:
        items = await self._list(POLICY_PLURAL, namespace)
        policies = []
        for body in items:
            try:
                policies.append(HealingPolicy.from_body(body))
            except ValueError as e:
                LOG.warning(f"Skipping invalid HealingPolicy {body.get('metadata', {}).get('name')}: {e}")
        return policies

    async def get_policy(self, namespace: str, name: str) -> Optional[HealingPolicy]:
        api = self.client.custom_api
        try:
            body = await self.client.call(
                f"get:{POLICY_PLURAL}/{namespace}/{name}", api.get_namespaced_custom_object,
                group=CRD_GROUP, version=CRD_VERSION, namespace=namespace, plural=POLICY_PLURAL, name=name,
            )
        except TerminalClusterError as e:
            if e.status == 404:
                return None
            raise
        return HealingPolicy.from_body(body)

    async def list_actions(self, namespace: Optional[str] = None) -> List[HealingAction]:
        actions = []
        for body in await self._list(ACTION_PLURAL, namespace):
            try:
                actions.append(HealingAction.from_body(body))
            except ValueError as e:
                LOG.warning(f"Skipping invalid HealingAction {body.get('metadata', {}).get('name')}: {e}")
        return actions

    async def create_action(self, action: HealingAction, owner_uid: str = "") -> bool:
        """Create the resource; ``False`` if it already exists"""
        api = self.client.custom_api
        body = action.to_body(owner_uid)
        # status is a subresource and is initialised by the execution loop
        body.pop("status")
        try:
            created = await self.client.call(
                f"create:{ACTION_PLURAL}/{action.key}", api.create_namespaced_custom_object,
                group=CRD_GROUP, version=CRD_VERSION, namespace=action.namespace, plural=ACTION_PLURAL, body=body,
            )
        except TransientClusterError as e:
            if e.status == 409:
                LOG.debug(f"HealingAction {action.key} already exists")
                return False
            raise
        action.uid = created.get("metadata", {}).get("uid", "")
        return True

    async def update_action_status(self, action: HealingAction) -> None:
        await self._patch_status(action.namespace, action.name, action.status_dict())

    async def _patch_status(self, namespace: str, name: str, status: Dict[str, Any]) -> None:
        api = self.client.custom_api
        await self.client.call(
            f"patch-status:{ACTION_PLURAL}/{namespace}/{name}", api.patch_namespaced_custom_object_status,
            group=CRD_GROUP, version=CRD_VERSION, namespace=namespace, plural=ACTION_PLURAL, name=name,
            body={"status": status},
        )

    async def _list(self, plural: str, namespace: Optional[str]) -> List[Dict[str, Any]]:
        api = self.client.custom_api
        if namespace:
            result = await self.client.call(
                f"list:{plural}/{namespace}", api.list_namespaced_custom_object,
                group=CRD_GROUP, version=CRD_VERSION, namespace=namespace, plural=plural,
            )
        else:
            result = await self.client.call(
                f"list:{plural}", api.list_cluster_custom_object,
                group=CRD_GROUP, version=CRD_VERSION, plural=plural,
            )
        return result.get("items", [])
